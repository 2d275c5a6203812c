# core/settings_test.py
from core.settings import *  # noqa: F401,F403

DEBUG = False

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': ':memory:',
    }
}

PASSWORD_HASHERS = ['django.contrib.auth.hashers.MD5PasswordHasher']

CELERY_TASK_ALWAYS_EAGER = True
CELERY_TASK_EAGER_PROPAGATES = True
CELERY_BROKER_URL = 'memory://'
CELERY_RESULT_BACKEND = 'cache+memory://'

FISCAL_OIB = '87246357068'
FISCAL_OPERATOR_OIB = ''
FISCAL_BUSINESS_SPACE_CODE = 'POSL1'
FISCAL_CASH_REGISTER_CODE = '2'
FISCAL_ENVIRONMENT = 'TEST'
FISCAL_ALLOW_PRODUCTION = False
FISCAL_CERT_PATH = ''
FISCAL_CERT_BASE64 = ''
FISCAL_CERT_PASSWORD = ''
FISCAL_RETRY_BACKOFF = 0
FISCAL_ERROR_KINDS = {}

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'handlers': {
        'null': {'class': 'logging.NullHandler'},
    },
    'loggers': {
        'fiskalizacija': {'handlers': ['null'], 'propagate': False},
        'django': {'handlers': ['null'], 'propagate': False},
    },
}
