import os
import tempfile

_DB_DIR = tempfile.mkdtemp(prefix="pfm-tests-")

os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("DATABASE_URL", "sqlite:///" + os.path.join(_DB_DIR, "test.db"))
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("LOG_LEVEL", "WARNING")
