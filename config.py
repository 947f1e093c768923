import os


def _env_bool(key, default=False):
    raw = os.getenv(key)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_list(key, default=""):
    raw = os.getenv(key, default) or ""
    return tuple(p.strip().lower() for p in raw.split(",") if p.strip())


class BaseConfig:
    # Security
    SECRET_KEY = os.getenv("SECRET_KEY", "change-me")

    # Database: request store (default bind) + finance ledger (separate bind)
    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URL", "sqlite:///workflow.db")
    SQLALCHEMY_BINDS = {
        "finance": os.getenv("FINANCE_DATABASE_URL", "sqlite:///finance.db"),
    }
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Logging
    LOG_DIR = os.getenv("LOG_DIR", "logs")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    # Aggregator
    AGGREGATOR_MAX_WORKERS = int(os.getenv("AGGREGATOR_MAX_WORKERS", 6))
    AGGREGATOR_PAGE_SIZE = int(os.getenv("AGGREGATOR_PAGE_SIZE", 20))
    AGGREGATOR_MAX_PAGE_SIZE = int(os.getenv("AGGREGATOR_MAX_PAGE_SIZE", 100))

    # Decisions
    REQUIRE_REJECTION_REASON = _env_bool("REQUIRE_REJECTION_REASON", False)
    # Roles allowed to answer a transfer on behalf of its target (empty = target only)
    TRANSFER_OVERRIDE_ROLES = _env_list("TRANSFER_OVERRIDE_ROLES")

    # Submission
    ADVANCE_MAX_AMOUNT = float(os.getenv("ADVANCE_MAX_AMOUNT", 50000))
    ADVANCE_MAX_INSTALLMENTS = int(os.getenv("ADVANCE_MAX_INSTALLMENTS", 12))
    DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "TRY")
    AUTO_ASSIGN_REVIEWERS = _env_bool("AUTO_ASSIGN_REVIEWERS", True)


class DevConfig(BaseConfig):
    DEBUG = True


class ProdConfig(BaseConfig):
    DEBUG = False


class TestConfig(BaseConfig):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    SQLALCHEMY_BINDS = {"finance": "sqlite://"}
    LOG_DIR = None
    # in-memory SQLite is a single shared connection; keep the fan-out inline
    AGGREGATOR_MAX_WORKERS = 1
    AUTO_ASSIGN_REVIEWERS = False
    TRANSFER_OVERRIDE_ROLES = ()
