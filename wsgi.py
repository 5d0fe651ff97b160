"""WSGI entrypoint for production servers: ``gunicorn wsgi:app``."""

import logging

from app import create_app
from config import Settings

settings = Settings.from_env()
logging.basicConfig(level=settings.log_level)

app = create_app(settings)
