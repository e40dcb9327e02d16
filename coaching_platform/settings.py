"""
Django settings for the coaching_platform project.
"""

from pathlib import Path
import os
import ssl
import sys
import dj_database_url
from dotenv import load_dotenv
from celery.schedules import crontab
from django.core.exceptions import ImproperlyConfigured
from django.urls import reverse_lazy

# Build paths inside the project like this: BASE_DIR / 'subdir'.
BASE_DIR = Path(__file__).resolve().parent.parent

load_dotenv(os.path.join(BASE_DIR, '.env'))

TESTING = (len(sys.argv) > 1 and sys.argv[1] == 'test') or 'pytest' in os.path.basename(sys.argv[0]) or 'pytest' in sys.modules

SECRET_KEY = os.getenv('SECRET_KEY')
DEBUG = os.getenv('DJANGO_DEBUG', 'False') == 'True'

if TESTING or DEBUG:
    SECRET_KEY = SECRET_KEY or 'django-insecure-local-development-key'

if not SECRET_KEY:
    raise ImproperlyConfigured("SECRET_KEY is not set in the environment variables.")

ALLOWED_HOSTS = [host for host in os.getenv('ALLOWED_HOSTS', 'localhost,127.0.0.1').split(',') if host]
CSRF_TRUSTED_ORIGINS = [origin for origin in os.getenv('CSRF_TRUSTED_ORIGINS', '').split(',') if origin]

SITE_URL = os.getenv('SITE_URL', 'http://localhost:8000')
SITE_NAME = 'Coaching Platform'

# Application definition
INSTALLED_APPS = [
    "unfold",
    "unfold.contrib.filters",
    "unfold.contrib.forms",

    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',

    'encrypted_model_fields',

    # Project Apps
    'core',
    'accounts',
    'payments',

    # Coaching Apps
    'coaching_core',
    'coaching_availability',
    'coaching_booking',
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

ROOT_URLCONF = 'coaching_platform.urls'

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

WSGI_APPLICATION = 'coaching_platform.wsgi.application'


# Database
if TESTING:
    DATABASES = {
        'default': dj_database_url.config(default=f"sqlite:///{BASE_DIR / 'test.sqlite3'}")
    }
    if DATABASES['default']['ENGINE'] == 'django.db.backends.sqlite3':
        # File-backed test database so the threaded concurrency tests get
        # separate connections; writers queue instead of failing on the lock.
        DATABASES['default']['TEST'] = {'NAME': str(BASE_DIR / 'test_concurrency.sqlite3')}
        DATABASES['default']['OPTIONS'] = {'timeout': 20, 'transaction_mode': 'IMMEDIATE'}
else:
    DATABASES = {
        'default': dj_database_url.config(
            conn_max_age=600,
            ssl_require=not DEBUG,
        )
    }


AUTH_PASSWORD_VALIDATORS = [
    { 'NAME': 'django.contrib.auth.password_validation.UserAttributeSimilarityValidator', },
    { 'NAME': 'django.contrib.auth.password_validation.MinimumLengthValidator', },
    { 'NAME': 'django.contrib.auth.password_validation.CommonPasswordValidator', },
    { 'NAME': 'django.contrib.auth.password_validation.NumericPasswordValidator', },
]

AUTH_USER_MODEL = 'accounts.User'

# Internationalization
LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True

STATIC_URL = '/static/'
STATIC_ROOT = os.path.join(BASE_DIR, 'staticfiles')

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# =======================================================
# ENCRYPTION (bank and tax details on payout settings)
# =======================================================
FIELD_ENCRYPTION_KEY = os.getenv('FIELD_ENCRYPTION_KEY')

if not FIELD_ENCRYPTION_KEY:
    if TESTING or DEBUG:
        # Local-only key; never used when FIELD_ENCRYPTION_KEY is provided.
        FIELD_ENCRYPTION_KEY = 'YWFhYWFhYWFhYWFhYWFhYWFhYWFhYWFhYWFhYWFhYWE='
    else:
        raise ImproperlyConfigured("FIELD_ENCRYPTION_KEY is not set in the environment variables.")

# =======================================================
# PAYMENTS & SCHEDULING
# =======================================================
STRIPE_SECRET_KEY = os.environ.get('STRIPE_SECRET_KEY')
STRIPE_WEBHOOK_SECRET = os.environ.get('STRIPE_WEBHOOK_SECRET') # For verifying webhook signatures

PAYMENT_GATEWAY = os.getenv('PAYMENT_GATEWAY', 'payments.gateway.StripeGateway')
PAYMENT_CURRENCY = os.getenv('PAYMENT_CURRENCY', 'INR')

# How long a slot stays held while the client is on the payment page
PAYMENT_HOLD_MINUTES = int(os.getenv('PAYMENT_HOLD_MINUTES', '15'))

# How far ahead clients can see open slots
SLOT_LISTING_WINDOW_DAYS = int(os.getenv('SLOT_LISTING_WINDOW_DAYS', '14'))

if not DEBUG and not TESTING:
    if not STRIPE_SECRET_KEY:
        raise ImproperlyConfigured("STRIPE_SECRET_KEY is not set in the environment variables.")
    if not STRIPE_WEBHOOK_SECRET:
        raise ImproperlyConfigured("STRIPE_WEBHOOK_SECRET is not set in the environment variables.")


LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': ('%(asctime)s [%(levelname)s] [%(name)s:%(lineno)s] '
                        '%(message)s'),
            'datefmt': '%Y-%m-%d %H:%M:%S'
        },
    },
    'handlers': {
        'console': {
            'level': 'DEBUG',
            'class': 'logging.StreamHandler',
            'formatter': 'verbose'
        },
    },
    'loggers': {
        'django': {
            'handlers': ['console'],
            'level': 'INFO',
            'propagate': True,
        },
        'django.template': {
            'handlers': ['console'],
            'level': 'INFO',
            'propagate': False,
        },
    },
    'root': {
        'handlers': ['console'],
        'level': 'WARNING' if TESTING else 'INFO',
    },
}


# --- PRODUCTION SETTINGS ---
if not DEBUG and not TESTING:
    SECURE_PROXY_SSL_HEADER = ('HTTP_X_FORWARDED_PROTO', 'https')
    USE_X_FORWARDED_HOST = True
    SECURE_SSL_REDIRECT = True
    SESSION_COOKIE_SECURE = True
    CSRF_COOKIE_SECURE = True


# =======================================================
# CELERY CONFIGURATION
# =======================================================
CELERY_BROKER_URL = os.environ.get('REDIS_URL') or os.environ.get('REDIS_TLS_URL') or 'redis://localhost:6379/0'
CELERY_RESULT_BACKEND = CELERY_BROKER_URL

# Handle Heroku Redis SSL (Rediss://)
if CELERY_BROKER_URL.startswith("rediss://"):
    CELERY_BROKER_USE_SSL = {
        'ssl_cert_reqs': ssl.CERT_NONE
    }
    CELERY_REDIS_BACKEND_USE_SSL = {
        'ssl_cert_reqs': ssl.CERT_NONE
    }

CELERY_BROKER_CONNECTION_RETRY_ON_STARTUP = True

if TESTING:
    CELERY_TASK_ALWAYS_EAGER = True
    CELERY_TASK_EAGER_PROPAGATES = True

CELERY_TIMEZONE = TIME_ZONE # 'UTC'

CELERY_BEAT_SCHEDULE = {
    # Release slots held by abandoned payment pages
    'expire-payment-holds': {
        'task': 'coaching_booking.tasks.expire_payment_holds',
        'schedule': crontab(minute='*/5'),
        'args': (),
        'options': {'queue': 'low_priority'},
    },
}

# --- ADMIN DASHBOARD THEME (Django Unfold) ---
UNFOLD = {
    "SITE_TITLE": "Coaching Control Deck",
    "SITE_HEADER": "Coaching Admin",
    "SITE_URL": "/",
    "SIDEBAR": {
        "show_search": True,
        "show_all_applications": False,
        "navigation": [
            {
                "title": "Coaching Ops",
                "separator": True,
                "items": [
                    {
                        "title": "Enrollments",
                        "icon": "how_to_reg",
                        "link": reverse_lazy("admin:coaching_booking_enrollment_changelist"),
                    },
                    {
                        "title": "Time Slots",
                        "icon": "calendar_month",
                        "link": reverse_lazy("admin:coaching_availability_timeslot_changelist"),
                    },
                    {
                        "title": "Courses",
                        "icon": "school",
                        "link": reverse_lazy("admin:coaching_core_course_changelist"),
                    },
                    {
                        "title": "Coaches",
                        "icon": "groups",
                        "link": reverse_lazy("admin:accounts_coachprofile_changelist"),
                    },
                ],
            },
            {
                "title": "Coach Payouts",
                "separator": True,
                "items": [
                    {
                        "title": "Payouts",
                        "icon": "payments",
                        "link": reverse_lazy("admin:payments_payout_changelist"),
                    },
                    {
                        "title": "Payout Settings",
                        "icon": "account_balance",
                        "link": reverse_lazy("admin:payments_payoutsettings_changelist"),
                    },
                    {
                        "title": "Purchases",
                        "icon": "shopping_cart",
                        "link": reverse_lazy("admin:payments_purchase_changelist"),
                    },
                ],
            },
        ],
    },
}
