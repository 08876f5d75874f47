"""Root conftest: point the application at SQLite before anything imports it."""

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("HOMIIO_IDENTITY_URL", "http://identity.test")
