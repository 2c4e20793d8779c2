"""
Runtime configuration, read from environment variables.
"""

import os

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "auction_app")

# Uploaded item images
UPLOAD_DIR = os.getenv("UPLOAD_DIR", os.path.join(os.getcwd(), "public", "uploads"))
UPLOAD_URL_PREFIX = os.getenv("UPLOAD_URL_PREFIX", "/uploads")
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", 5 * 1024 * 1024))
# Text fields, per field
MAX_FIELD_BYTES = int(os.getenv("MAX_FIELD_BYTES", 20 * 1024 * 1024))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.getenv("LOG_FORMAT", "plain").lower()

PORT = int(os.getenv("PORT", 8000))
