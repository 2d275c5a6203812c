# passenger_wsgi.py: WSGI entry point (cPanel/Passenger, runserver)

import os
import sys
from pathlib import Path

# Project root on sys.path
PROJECT_PATH = str(Path(__file__).resolve().parent)
if PROJECT_PATH not in sys.path:
    sys.path.insert(0, PROJECT_PATH)

# Settings module
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "core.settings")

# WSGI callable
from django.core.wsgi import get_wsgi_application  # noqa: E402
application = get_wsgi_application()
