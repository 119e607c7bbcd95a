"""
Django base settings for the Marathon Event Sync service.

This module contains settings common to all environments.
For more information on this file, see
https://docs.djangoproject.com/en/4.2/topics/settings/
"""

import os
from pathlib import Path

import sentry_sdk
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Build paths inside the project like this: BASE_DIR / 'subdir'.
BASE_DIR = Path(__file__).resolve().parent.parent.parent


# SECURITY WARNING: keep the secret key used in production secret!
SECRET_KEY = os.getenv(
    "SECRET_KEY",
    "django-insecure-eventsync-dev-key-change-in-production"
)

# SECURITY WARNING: don't run with debug turned on in production!
DEBUG = os.getenv("DEBUG", "True") == "True"

ALLOWED_HOSTS = os.getenv("ALLOWED_HOSTS", "localhost,127.0.0.1").split(",")


# Application definition

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    # Third-party apps
    "rest_framework",
    "drf_spectacular",
    # Local apps
    "eventsync",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "config.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.debug",
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    },
]

WSGI_APPLICATION = "config.wsgi.application"


# Database
# Configured in environment-specific settings (development.py, production.py, test.py)

DATABASES = {
    # Override in environment-specific settings
}


# Password validation
# https://docs.djangoproject.com/en/4.2/ref/settings/#auth-password-validators

AUTH_PASSWORD_VALIDATORS = [
    {
        "NAME": "django.contrib.auth.password_validation.UserAttributeSimilarityValidator",
    },
    {
        "NAME": "django.contrib.auth.password_validation.MinimumLengthValidator",
    },
    {
        "NAME": "django.contrib.auth.password_validation.CommonPasswordValidator",
    },
    {
        "NAME": "django.contrib.auth.password_validation.NumericPasswordValidator",
    },
]


# Internationalization

LANGUAGE_CODE = "en-us"

TIME_ZONE = "UTC"

USE_I18N = True

USE_TZ = True


# Static files (CSS, JavaScript, Images)

STATIC_URL = "static/"
STATIC_ROOT = BASE_DIR / "staticfiles"

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"


# Cache
# Configured in environment-specific settings

CACHES = {
    # Override in environment-specific settings
}


# Celery Configuration
# https://docs.celeryproject.org/en/stable/django/first-steps-with-django.html

CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/1")
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/1")
CELERY_ACCEPT_CONTENT = ["json"]
CELERY_TASK_SERIALIZER = "json"
CELERY_RESULT_SERIALIZER = "json"
CELERY_TIMEZONE = TIME_ZONE
CELERY_TASK_TRACK_STARTED = True
CELERY_TASK_TIME_LIMIT = 15 * 60  # 15 minutes max for a single binding sync
# Raises SoftTimeLimitExceeded inside the task so the run can be finished as failed
CELERY_TASK_SOFT_TIME_LIMIT = 14 * 60

# Task routing - per-binding syncs run on the bounded "sync" queue
CELERY_TASK_ROUTES = {
    "eventsync.tasks.sync_binding": {"queue": "sync"},
    "eventsync.tasks.check_due_bindings": {"queue": "default"},
    "eventsync.tasks.sync_all_bindings": {"queue": "default"},
}


# Django REST Framework Configuration
# https://www.django-rest-framework.org/

REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": [
        "rest_framework.authentication.SessionAuthentication",
    ],
    "DEFAULT_PERMISSION_CLASSES": [
        "rest_framework.permissions.IsAuthenticated",
    ],
    "DEFAULT_SCHEMA_CLASS": "drf_spectacular.openapi.AutoSchema",
    "DEFAULT_PAGINATION_CLASS": "rest_framework.pagination.PageNumberPagination",
    "PAGE_SIZE": 100,
}


# DRF Spectacular (OpenAPI/Swagger) Configuration
# https://drf-spectacular.readthedocs.io/

SPECTACULAR_SETTINGS = {
    "TITLE": "Marathon Event Sync API",
    "DESCRIPTION": "Multi-source sync, reconciliation and review queue for marathon editions",
    "VERSION": "1.0.0",
    "SERVE_INCLUDE_SCHEMA": False,
}


# Logging Configuration
# https://docs.djangoproject.com/en/4.2/topics/logging/

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "{levelname} {asctime} {module} {message}",
            "style": "{",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "verbose",
        },
    },
    "loggers": {
        "django": {
            "handlers": ["console"],
            "level": os.getenv("LOG_LEVEL", "INFO"),
        },
        "eventsync": {
            "handlers": ["console"],
            "level": os.getenv("LOG_LEVEL", "INFO"),
        },
    },
}


# Sentry Configuration
# https://docs.sentry.io/platforms/python/guides/django/

SENTRY_DSN = os.getenv("SENTRY_DSN", "")
SENTRY_ENVIRONMENT = os.getenv("SENTRY_ENVIRONMENT", "development")
SENTRY_TRACES_SAMPLE_RATE = float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.2"))

if SENTRY_DSN:
    sentry_sdk.init(
        dsn=SENTRY_DSN,
        send_default_pii=False,
        traces_sample_rate=SENTRY_TRACES_SAMPLE_RATE,
        environment=SENTRY_ENVIRONMENT,
    )


# Sync Engine Configuration

# Minimum extractor confidence for a candidate to be applied automatically
SYNC_AUTO_APPLY_THRESHOLD = float(os.getenv("SYNC_AUTO_APPLY_THRESHOLD", "0.7"))

# Upper bound for a single retry backoff sleep (seconds)
SYNC_MAX_BACKOFF_SECONDS = int(os.getenv("SYNC_MAX_BACKOFF_SECONDS", "600"))

# Size of the bounded worker pool (Celery worker concurrency or local threads)
SYNC_MAX_WORKERS = int(os.getenv("SYNC_MAX_WORKERS", "4"))
CELERY_WORKER_CONCURRENCY = SYNC_MAX_WORKERS

# "celery" sends each binding to the sync queue, "local" runs a thread pool
SYNC_DISPATCH_MODE = os.getenv("SYNC_DISPATCH_MODE", "celery")

# A binding claim older than this is considered abandoned (seconds)
SYNC_LOCK_STALE_SECONDS = int(os.getenv("SYNC_LOCK_STALE_SECONDS", "1800"))

# Headroom kept between a run's deadline and the stale-claim window or Celery soft limit (seconds)
SYNC_RUN_DEADLINE_MARGIN_SECONDS = int(os.getenv("SYNC_RUN_DEADLINE_MARGIN_SECONDS", "60"))

# Raw content is truncated to this many characters before hashing and storage
SYNC_RAW_CONTENT_MAX_CHARS = int(os.getenv("SYNC_RAW_CONTENT_MAX_CHARS", str(2 * 1024 * 1024)))

# Characters of raw content returned by the operator API without ?full=1
SYNC_RAW_PREVIEW_CHARS = int(os.getenv("SYNC_RAW_PREVIEW_CHARS", "20000"))

# Extra time granted on top of a source's request timeout before a fetch is abandoned
SYNC_FETCH_TIMEOUT_GRACE_SECONDS = float(os.getenv("SYNC_FETCH_TIMEOUT_GRACE_SECONDS", "5"))

SYNC_USER_AGENT = os.getenv("SYNC_USER_AGENT", "marathon-sync/1.0")

# Optional AI fallback extractor (OpenAI-compatible chat completions endpoint)
SYNC_AI_FALLBACK_ENABLED = os.getenv("SYNC_AI_FALLBACK_ENABLED", "False") == "True"
SYNC_AI_CONFIDENCE = float(os.getenv("SYNC_AI_CONFIDENCE", "0.6"))
SYNC_AI_TIMEOUT = float(os.getenv("SYNC_AI_TIMEOUT", "60"))
AI_API_KEY = os.getenv("AI_API_KEY", "")
AI_MODEL = os.getenv("AI_MODEL", "")
AI_BASE_URL = os.getenv("AI_BASE_URL", "https://api.openai.com/v1")


# Monitoring Configuration

# Consecutive failure threshold - alert after N consecutive failed runs per binding
SYNC_FAILURE_THRESHOLD = int(os.getenv("SYNC_FAILURE_THRESHOLD", "5"))
SYNC_FAILURE_TRACKING_ENABLED = os.getenv("SYNC_FAILURE_TRACKING_ENABLED", "True") == "True"
