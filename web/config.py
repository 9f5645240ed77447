"""
Web dashboard configuration.
"""
import os

from core.config import config

# Web server settings
WEB_HOST = config.web.host
WEB_PORT = config.web.port

# Logging (LOG_FORMAT=json in production)
LOG_FORMAT = os.getenv("LOG_FORMAT", "text")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

VERSION = config.version
