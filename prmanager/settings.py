import os
import warnings

from pathlib import Path

from __logging__ import get_logger_config


BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY", "django-insecure-0q8#w2v!pr-manager-local-only-n4k7x$e1m9z@c3t6")

DEBUG = os.environ.get("DEBUG", "True").lower() == "true"
ALLOWED_HOSTS = [
    host.strip()
    for host in os.environ.get("ALLOWED_HOSTS", "*").split(",")
    if host.strip()
]

if not DEBUG and "*" in ALLOWED_HOSTS:
    warnings.warn("ALLOWED_HOSTS contains '*' in production")


def _parse_csv_env(key: str, default: str = "") -> list[str]:
    raw = os.environ.get(key, default)
    if not raw:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


def _parse_bool_env(key: str, default: bool = False) -> bool:
    raw = os.environ.get(key, "")
    if not raw:
        return default
    return raw.lower() in ("true", "1", "yes")


def _parse_int_csv_env(key: str, default: list[int]) -> list[int]:
    items = _parse_csv_env(key)
    if not items:
        return default
    return [int(item) for item in items]


CSRF_TRUSTED_ORIGINS = _parse_csv_env("CSRF_TRUSTED_ORIGINS")
SESSION_COOKIE_SECURE = _parse_bool_env("SESSION_COOKIE_SECURE", default=not DEBUG)
CSRF_COOKIE_SECURE = _parse_bool_env("CSRF_COOKIE_SECURE", default=not DEBUG)


INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "rest_framework",
    "django_filters",
    "request_id",
    "django_celery_beat",
    "drf_spectacular",
    "subscriptions",
    "core",
]


MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "whitenoise.middleware.WhiteNoiseMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
    "request_id.middleware.RequestIdMiddleware",
]

ROOT_URLCONF = "prmanager.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    },
]

WSGI_APPLICATION = "prmanager.wsgi.application"


# not production code, but really useful for local development without needing to setup postgres
_DB_NAME = os.environ.get("DB_NAME") or os.environ.get("POSTGRES_DB")
_DB_USER = os.environ.get("DB_USER") or os.environ.get("POSTGRES_USER")
_DB_PASSWORD = os.environ.get("DB_PASSWORD") or os.environ.get("POSTGRES_PASSWORD")
_DB_HOST = os.environ.get("DB_HOST") or os.environ.get("POSTGRES_HOST", "")
_DB_PORT = os.environ.get("DB_PORT") or os.environ.get("POSTGRES_PORT", "5432")

if _DB_NAME and _DB_USER:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.postgresql",
            "NAME": _DB_NAME,
            "USER": _DB_USER,
            "PASSWORD": _DB_PASSWORD or "",
            "HOST": _DB_HOST,
            "PORT": _DB_PORT,
            "CONN_MAX_AGE": 600,
            "OPTIONS": {
                "connect_timeout": 5,
            },
        }
    }
else:
    if not DEBUG:
        warnings.warn("No Postgres credentials found, falling back to SQLite. Do NOT use in production.")
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": BASE_DIR / "db.sqlite3",
        }
    }

IS_POSTGRES = DATABASES["default"]["ENGINE"] == "django.db.backends.postgresql"


AUTH_PASSWORD_VALIDATORS = [
    {"NAME": "django.contrib.auth.password_validation.UserAttributeSimilarityValidator"},
    {"NAME": "django.contrib.auth.password_validation.MinimumLengthValidator"},
    {"NAME": "django.contrib.auth.password_validation.CommonPasswordValidator"},
    {"NAME": "django.contrib.auth.password_validation.NumericPasswordValidator"},
]


LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True

STATIC_URL = "static/"
STATIC_ROOT = BASE_DIR / "staticfiles"
if not DEBUG:
    STORAGES = {
        "default": {"BACKEND": "django.core.files.storage.FileSystemStorage"},
        "staticfiles": {"BACKEND": "whitenoise.storage.CompressedManifestStaticFilesStorage"},
    }


# --- Cache ---

REDIS_HOST = os.environ.get("REDIS_HOST", "")
REDIS_PORT = os.environ.get("REDIS_PORT", "6379")

_REDIS_URL = f"redis://{REDIS_HOST}:{REDIS_PORT}/0" if REDIS_HOST else ""

if _REDIS_URL:
    CACHES = {
        "default": {
            "BACKEND": "django_redis.cache.RedisCache",
            "LOCATION": _REDIS_URL,
            "OPTIONS": {
                "CLIENT_CLASS": "django_redis.client.DefaultClient",
                "SOCKET_CONNECT_TIMEOUT": 2,
                "SOCKET_TIMEOUT": 2,
                "IGNORE_EXCEPTIONS": True,
            },
            "KEY_PREFIX": "prmanager",
            "TIMEOUT": 300,
        }
    }
else:
    CACHES = {
        "default": {
            "BACKEND": "django.core.cache.backends.locmem.LocMemCache",
        }
    }


REST_FRAMEWORK = {
    "DEFAULT_SCHEMA_CLASS": "drf_spectacular.openapi.AutoSchema",
    "DEFAULT_RENDERER_CLASSES": [
        "rest_framework.renderers.JSONRenderer",
        "rest_framework.renderers.BrowsableAPIRenderer",
    ],
    "DEFAULT_PAGINATION_CLASS": "rest_framework.pagination.PageNumberPagination",
    "PAGE_SIZE": 50,
    "DEFAULT_THROTTLE_CLASSES": [
        "rest_framework.throttling.AnonRateThrottle",
        "rest_framework.throttling.UserRateThrottle",
    ],
    "DEFAULT_THROTTLE_RATES": {
        "anon": "100/day",
        "user": "1000/day",
        "lemonsqueezy_webhook": "200/minute",
    },
    "EXCEPTION_HANDLER": "core.exceptions.drf_exception_handler",
}

SPECTACULAR_SETTINGS = {
    "TITLE": "PR Manager API",
    "DESCRIPTION": "Subscription state for PR Manager, synchronized from Lemon Squeezy webhooks.",
    "VERSION": "1.0.0",
    "SERVE_INCLUDE_SCHEMA": False,
    "SCHEMA_PATH_PREFIX": r"/api/",
    "TAGS": [
        {"name": "Health", "description": "Service health checks"},
        {"name": "Subscriptions", "description": "Subscription status"},
        {"name": "Webhooks", "description": "Lemon Squeezy webhook ingestion"},
        {"name": "Webhook Admin", "description": "Webhook audit trail, replay and retry scheduler status"},
    ],
}


LEMONSQUEEZY_WEBHOOK_SECRET = os.getenv("LEMONSQUEEZY_WEBHOOK_SECRET", "")

if not LEMONSQUEEZY_WEBHOOK_SECRET:
    warnings.warn("No Lemon Squeezy webhook secret was provided; webhook ingestion will reject every delivery.")


RABBITMQ_USER = os.getenv("RABBITMQ_USER", "")
RABBITMQ_PASSWORD = os.getenv("RABBITMQ_PASSWORD", "")
RABBITMQ_HOST = os.getenv("RABBITMQ_HOST", "")
RABBITMQ_PORT = os.getenv("RABBITMQ_PORT", "")

CELERY_BROKER_URL = f"amqp://{RABBITMQ_USER}:{RABBITMQ_PASSWORD}@{RABBITMQ_HOST}:{RABBITMQ_PORT}//"
CELERY_RESULT_BACKEND = _REDIS_URL
CELERY_WORKER_HIJACK_ROOT_LOGGER = False
CELERY_BEAT_SCHEDULER = "django_celery_beat.schedulers:DatabaseScheduler"

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOGGING = get_logger_config(LOG_LEVEL)

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

# Webhook retry queue
WEBHOOK_MAX_RETRY_ATTEMPTS = int(os.getenv("WEBHOOK_MAX_RETRY_ATTEMPTS", "5"))
# 5 min, 30 min, 2 h, 24 h; the last entry repeats for any later attempt
WEBHOOK_RETRY_DELAYS_SECONDS = _parse_int_csv_env("WEBHOOK_RETRY_DELAYS_SECONDS", [300, 1800, 7200, 86400])
WEBHOOK_QUEUE_BATCH_SIZE = int(os.getenv("WEBHOOK_QUEUE_BATCH_SIZE", "10"))
# claimed items stay invisible to other passes for this long
WEBHOOK_QUEUE_LEASE_SECONDS = int(os.getenv("WEBHOOK_QUEUE_LEASE_SECONDS", "300"))
