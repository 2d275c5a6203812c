import os
import json
from pathlib import Path
from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent

# --- ENVIRONMENT ---
# .env at the project root (see .env.example)
load_dotenv(BASE_DIR / '.env')


def env_bool(name: str, default: bool = False) -> bool:
    return os.getenv(name, str(default)).strip().lower() in ('1', 'true', 'yes', 'on')


# --- SECURITY ---
SECRET_KEY = os.getenv('SECRET_KEY', 'django-insecure-change-me')
DEBUG = env_bool('DEBUG', False)
ALLOWED_HOSTS = [host for host in os.getenv('ALLOWED_HOSTS', 'localhost,127.0.0.1').split(',') if host]

CSRF_TRUSTED_ORIGINS = [url for url in os.getenv('TRUSTED_ORIGINS', '').split(',') if url]
CSRF_COOKIE_SECURE = not DEBUG
SESSION_COOKIE_SECURE = not DEBUG
SESSION_COOKIE_SAMESITE = 'Lax'

# -------------------------------------------------
# Installed apps
# -------------------------------------------------
APPEND_SLASH = True

INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',

    'rest_framework',

    'fiskalizacija.apps.FiskalizacijaConfig',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
]

ROOT_URLCONF = 'core.urls'
WSGI_APPLICATION = 'passenger_wsgi.application'

LANGUAGE_CODE = 'hr'
TIME_ZONE = 'Europe/Zagreb'
USE_I18N = True
USE_TZ = True

# --- Database ---
DATABASES = {
    'default': {
        'ENGINE': os.getenv('DATABASE_ENGINE', 'django.db.backends.sqlite3'),
        'NAME': os.getenv('DATABASE_NAME', str(BASE_DIR / 'db.sqlite3')),
        'USER': os.getenv('DATABASE_USER', ''),
        'PASSWORD': os.getenv('DATABASE_PASSWORD', ''),
        'HOST': os.getenv('DATABASE_HOST', ''),
        'PORT': os.getenv('DATABASE_PORT', ''),
    }
}

# --- DRF ---
REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": [
        "rest_framework.authentication.SessionAuthentication",
        "rest_framework.authentication.BasicAuthentication",
    ],
    "DEFAULT_PERMISSION_CLASSES": [
        "rest_framework.permissions.IsAuthenticated",
    ],
    "DEFAULT_PAGINATION_CLASS": "rest_framework.pagination.PageNumberPagination",
    "PAGE_SIZE": 50,
}

# --- Templates ---
TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.debug',
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

STATIC_URL = '/static/'
STATIC_ROOT = BASE_DIR / 'staticfiles'

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# --- Celery ---
CELERY_BROKER_URL = os.getenv('CELERY_BROKER_URL', 'redis://localhost:6379/0')
CELERY_RESULT_BACKEND = os.getenv('CELERY_RESULT_BACKEND', CELERY_BROKER_URL)
CELERY_TASK_ALWAYS_EAGER = env_bool('CELERY_TASK_ALWAYS_EAGER', False)
CELERY_TASK_ACKS_LATE = False
CELERY_TIMEZONE = TIME_ZONE

# -------------------------------------------------
# Fiskalizacija (CIS)
# -------------------------------------------------
FISCAL_OIB = os.getenv('FISCAL_OIB', '')
FISCAL_OPERATOR_OIB = os.getenv('FISCAL_OPERATOR_OIB', '')
FISCAL_BUSINESS_SPACE_CODE = os.getenv('FISCAL_BUSINESS_SPACE_CODE', '')
FISCAL_CASH_REGISTER_CODE = os.getenv('FISCAL_CASH_REGISTER_CODE', '')

# TEST | PRODUCTION. PRODUCTION only with FISCAL_ALLOW_PRODUCTION=true
FISCAL_ENVIRONMENT = os.getenv('FISCAL_ENVIRONMENT', 'TEST')
FISCAL_ALLOW_PRODUCTION = env_bool('FISCAL_ALLOW_PRODUCTION', False)

FISCAL_CERT_PATH = os.getenv('FISCAL_CERT_PATH', '')
FISCAL_CERT_BASE64 = os.getenv('FISCAL_CERT_BASE64', '')
FISCAL_CERT_PASSWORD = os.getenv('FISCAL_CERT_PASSWORD', '')
FISCAL_CA_BUNDLE = os.getenv('FISCAL_CA_BUNDLE', '')

# Network / resilience
FISCAL_REQUEST_TIMEOUT = float(os.getenv('FISCAL_REQUEST_TIMEOUT', 15))  # seconds
FISCAL_RETRY_MAX = int(os.getenv('FISCAL_RETRY_MAX', 3))
FISCAL_RETRY_BACKOFF = float(os.getenv('FISCAL_RETRY_BACKOFF', 0.5))
FISCAL_RETRY_BACKOFF_MAX = float(os.getenv('FISCAL_RETRY_BACKOFF_MAX', 8))

FISCAL_SEQUENCE_MARK = os.getenv('FISCAL_SEQUENCE_MARK', 'N')
FISCAL_VAT_REGISTERED = env_bool('FISCAL_VAT_REGISTERED', True)

# Extra CIS codes -> FiscalErrorKind, e.g. {"s006": "DUPLICATE_INVOICE"}
FISCAL_ERROR_KINDS = json.loads(os.getenv('FISCAL_ERROR_KINDS', '{}') or '{}')

FISCAL_TASK_SOFT_TIME_LIMIT = int(os.getenv('FISCAL_TASK_SOFT_TIME_LIMIT', 60))
FISCAL_TASK_TIME_LIMIT = int(os.getenv('FISCAL_TASK_TIME_LIMIT', 90))

# --- LOGGING ---
LOG_DIR = BASE_DIR / 'logs'
LOG_DIR.mkdir(exist_ok=True)

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '%(asctime)s %(levelname)s %(name)s: %(message)s',
        },
    },
    'handlers': {
        'console': {
            'level': 'INFO',
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
        'file': {
            'level': 'INFO',
            'class': 'logging.handlers.RotatingFileHandler',
            'filename': LOG_DIR / 'django.log',
            'maxBytes': 1024 * 1024 * 5,  # 5MB
            'backupCount': 5,
            'formatter': 'verbose',
        },
        'fiscal_file': {
            'level': 'DEBUG' if DEBUG else 'INFO',
            'class': 'logging.handlers.RotatingFileHandler',
            'filename': LOG_DIR / 'fiskalizacija.log',
            'maxBytes': 1024 * 1024 * 5,
            'backupCount': 10,
            'formatter': 'verbose',
        },
    },
    'loggers': {
        'django': {
            'handlers': ['console', 'file'],
            'level': 'INFO',
            'propagate': True,
        },
        'fiskalizacija': {
            'handlers': ['console', 'fiscal_file'],
            'level': 'DEBUG' if DEBUG else 'INFO',
            'propagate': False,
        },
    },
}
