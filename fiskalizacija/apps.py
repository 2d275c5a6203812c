# fiskalizacija/apps.py
from __future__ import annotations

from django.apps import AppConfig


class FiskalizacijaConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "fiskalizacija"
    verbose_name = "Fiskalizacija (CIS)"
