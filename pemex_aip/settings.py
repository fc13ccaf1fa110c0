"""
Django settings for pemex_aip project.

Everything deployment specific is read from environment variables prefixed with `Pemex`.
"""
import logging
import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent


def env_flag(name: str, default: str = "False") -> bool:
    return os.environ.get(name, default).strip().lower() in ["1", "true", "yes", "y"]


SECRET_KEY = os.environ.get("PemexSECRET_KEY", "pemex-insecure-default")

DEBUG = env_flag("PemexDEBUG")

ALLOWED_HOSTS = [each.strip() for each in os.environ.get("PemexALLOWED_HOSTS", "localhost,127.0.0.1,testserver").split(",")
                 if each.strip()]

INSTALLED_APPS = [
    "django.contrib.contenttypes",
    "django.contrib.staticfiles",
    "ninja",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.middleware.common.CommonMiddleware",
]

ROOT_URLCONF = "pemex_aip.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.request",
            ],
        },
    },
]

WSGI_APPLICATION = "pemex_aip.wsgi.application"

DATABASES = {}

LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = False
USE_TZ = True

STATIC_URL = "static/"

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "{asctime} {levelname} {name} {message}",
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
        "pemex": {
            "handlers": ["console"],
            "level": os.environ.get("PemexLogLevel", "INFO"),
        },
        "pemex_api": {
            "handlers": ["console"],
            "level": os.environ.get("PemexLogLevel", "INFO"),
        },
    },
}

SITE_HEADER = "Pemex"

api_key = os.environ.get("PemexAPIKey", "")
store = os.environ.get("PemexStore") or None
openssl = os.environ.get("PemexOpenSSL") or None
output = Path(os.environ.get("PemexOutput", str(BASE_DIR / "output")))
timeout = float(os.environ.get("PemexTimeout", "30"))
legacy = env_flag("PemexLegacy")
history = os.environ.get("PemexHistory") or None
