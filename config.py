# ==========================================================================================================
# -------------- Configuration file for the WayGlobe Flask application -------------------------------------
# ==========================================================================================================
import os
from dotenv import load_dotenv


if os.environ.get("FLASK_ENV") != "production":
    load_dotenv()

basedir = os.path.abspath(os.path.dirname(__file__))


def _normalise_database_url(url):
    """Point plain postgres URLs at the pg8000 driver."""
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+pg8000://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+pg8000://", 1)
    return url


class Config:

    SECRET_KEY = os.getenv("SECRET_KEY")
    if not SECRET_KEY:
        raise ValueError("SECRET_KEY must be set in production")

    FLASK_ENV = os.getenv("FLASK_ENV", "production")
    DEBUG = os.getenv("DEBUG", "False").lower() in ("true", "1", "t")
    TESTING = False

    _database_url = os.getenv("DATABASE_URL")
    if not _database_url:
        _database_url = f"sqlite:///{os.path.join(basedir, 'instance', 'wayglobe.db')}"

    SQLALCHEMY_DATABASE_URI = _normalise_database_url(_database_url)
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_size": 10,
        "max_overflow": 20,
        "pool_pre_ping": True,
        "pool_recycle": 300,
    } if not _database_url.startswith("sqlite") else {"pool_pre_ping": True}

    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"

    LOG_DIR = os.getenv("LOG_DIR", os.path.join(basedir, "logs"))

    # Payout gateway; simulated disbursement when no URL is configured
    PAYOUT_API_URL = os.getenv("PAYOUT_API_URL")
    PAYOUT_API_KEY = os.getenv("PAYOUT_API_KEY")
    PAYOUT_API_TIMEOUT = int(os.getenv("PAYOUT_API_TIMEOUT", "15"))

    APP_BASE_URL = os.getenv("APP_BASE_URL", "https://wayglobe.app")

    PAYOUT_BATCH_SIZE = int(os.getenv("PAYOUT_BATCH_SIZE", "10"))
    AUTOPOOL_BATCH_SIZE = int(os.getenv("AUTOPOOL_BATCH_SIZE", "100"))
    DATA_RETENTION_DAYS = int(os.getenv("DATA_RETENTION_DAYS", "30"))


class TestingConfig(Config):
    TESTING = True
    DEBUG = False
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    SQLALCHEMY_ENGINE_OPTIONS = {}
    PAYOUT_API_URL = None
    WTF_CSRF_ENABLED = False
