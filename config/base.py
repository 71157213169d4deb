# config.py
import os


def _coerce_bool(value, default=False):
    """Convert environment-style truthy/falsey values to bool."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    value_str = str(value).strip().lower()
    if value_str in {"1", "true", "yes", "on"}:
        return True
    if value_str in {"0", "false", "no", "off"}:
        return False
    return default


def _parse_adapter_list(value):
    """
    Parse a comma-separated adapter list while keeping order and removing duplicates.

    Returns:
        tuple[str, ...]: Normalized adapter identifiers.
    """
    if not value:
        return ()

    seen = set()
    adapters = []
    for raw_item in value.split(","):
        item = raw_item.strip().lower()
        if not item or item in seen:
            continue
        seen.add(item)
        adapters.append(item)
    return tuple(adapters)


def _env_int(name, default, *, minimum=1):
    """Read a positive integer from the environment, falling back on bad input."""
    try:
        value = int(os.environ.get(name, default))
    except (TypeError, ValueError):
        return default
    return value if value >= minimum else default


def _env_float(name, default):
    try:
        value = float(os.environ.get(name, default))
    except (TypeError, ValueError):
        return default
    return value if value > 0 else default


class Config:
    _flask_env = os.environ.get("FLASK_ENV", "development")
    _is_testing = _flask_env == "testing"
    _is_production = _flask_env == "production"

    SECRET_KEY = os.environ.get("SECRET_KEY")

    if not SECRET_KEY and _is_production:
        raise ValueError("SECRET_KEY environment variable is required in production.")

    if not SECRET_KEY:
        SECRET_KEY = "dev-secret-key-change-in-production"

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {}

    # Sync engine
    SYNC_ENABLED = _coerce_bool(os.environ.get("SYNC_ENABLED"), default=False)
    SYNC_ADAPTERS = _parse_adapter_list(os.environ.get("SYNC_ADAPTERS", "airtable"))

    if SYNC_ENABLED and not SYNC_ADAPTERS:
        raise ValueError("SYNC_ENABLED is true but SYNC_ADAPTERS is empty. Provide at least one adapter name.")

    SYNC_WORKER_ENABLED = _coerce_bool(os.environ.get("SYNC_WORKER_ENABLED"), default=False)

    AIRTABLE_PERSONAL_ACCESS_TOKEN = os.environ.get("AIRTABLE_PERSONAL_ACCESS_TOKEN")
    LOOPS_API_KEY = os.environ.get("LOOPS_API_KEY")
    LOOPS_DEFAULT_LIST_ID = os.environ.get("LOOPS_DEFAULT_LIST_ID") or None
    OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY")
    OPENAI_MODEL = os.environ.get("OPENAI_MODEL", "gpt-4o-mini")

    SYNC_DEFAULT_USER_GROUP = os.environ.get("SYNC_DEFAULT_USER_GROUP", "Hack Clubber")
    SYNC_AIRTABLE_RATE_PER_SECOND = _env_float("SYNC_AIRTABLE_RATE_PER_SECOND", 2.0)
    SYNC_LOOPS_RATE_PER_SECOND = _env_float("SYNC_LOOPS_RATE_PER_SECOND", 3.0)
    SYNC_LLM_RATE_PER_SECOND = _env_float("SYNC_LLM_RATE_PER_SECOND", 3.0)
    SYNC_HTTP_TIMEOUT_SECONDS = _env_float("SYNC_HTTP_TIMEOUT_SECONDS", 30.0)
    SYNC_POLL_SAFETY_MARGIN_SECONDS = _env_int("SYNC_POLL_SAFETY_MARGIN_SECONDS", 300, minimum=0)
    SYNC_FAILURE_MAX_BACKOFF_SECONDS = _env_int("SYNC_FAILURE_MAX_BACKOFF_SECONDS", 1800)
    SYNC_ENQUEUE_BATCH_SIZE = _env_int("SYNC_ENQUEUE_BATCH_SIZE", 200)
    SYNC_DISPATCH_BATCH_SIZE = _env_int("SYNC_DISPATCH_BATCH_SIZE", 50)
    SYNC_PRUNE_FIELD_BASELINES_DAYS = _env_int("SYNC_PRUNE_FIELD_BASELINES_DAYS", 30)
    SYNC_PRUNE_DESTINATION_BASELINES_DAYS = _env_int("SYNC_PRUNE_DESTINATION_BASELINES_DAYS", 90)
    SYNC_PRUNE_OUTBOX_DAYS = _env_int("SYNC_PRUNE_OUTBOX_DAYS", 30)
    SYNC_PRUNE_EXTRACTION_CACHE_DAYS = _env_int("SYNC_PRUNE_EXTRACTION_CACHE_DAYS", 90)
    SYNC_DESTINATION_BASELINE_TTL_DAYS = _env_int("SYNC_DESTINATION_BASELINE_TTL_DAYS", 90)
    SYNC_SCHEDULE_PATH = os.environ.get(
        "SYNC_SCHEDULE_PATH",
        os.path.join(os.path.dirname(__file__), "sync_schedule.yaml"),
    )
    SYNC_TASK_TIME_LIMIT = _env_int("SYNC_TASK_TIME_LIMIT", 15 * 60)
    SYNC_TASK_SOFT_TIME_LIMIT = _env_int("SYNC_TASK_SOFT_TIME_LIMIT", 12 * 60)

    CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL")
    CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND")
    CELERY_SQLITE_PATH = os.environ.get("CELERY_SQLITE_PATH")
    CELERY_CONFIG = os.environ.get("CELERY_CONFIG")


class DevelopmentConfig(Config):
    DEBUG = True
    # Get the project root directory (parent of config directory)
    _config_dir = os.path.dirname(os.path.abspath(__file__))
    _project_root = os.path.dirname(_config_dir)
    instance_path = os.path.join(_project_root, "instance")

    if not os.path.exists(instance_path):
        os.makedirs(instance_path, exist_ok=True)

    # SQLite URI format: sqlite:///absolute/path (3 slashes for absolute path)
    db_path_normalized = os.path.join(instance_path, "sync_dev.db").replace("\\", "/")
    db_uri = f"sqlite:///{db_path_normalized}"

    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", db_uri)
    SQLALCHEMY_ECHO = _coerce_bool(os.environ.get("SQLALCHEMY_ECHO"), default=False)
    if SQLALCHEMY_DATABASE_URI.startswith("sqlite"):
        SQLALCHEMY_ENGINE_OPTIONS = {
            "connect_args": {
                "check_same_thread": False,
                "timeout": 30,
            }
        }
    else:
        SQLALCHEMY_ENGINE_OPTIONS = {}


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = os.environ.get("SECRET_KEY", "test-secret-key-for-testing-only")
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "connect_args": {
            "check_same_thread": False,
            "timeout": 5,
        }
    }
    SYNC_ENABLED = True
    SYNC_ADAPTERS = ("airtable",)
    SYNC_WORKER_ENABLED = False
    AIRTABLE_PERSONAL_ACCESS_TOKEN = None
    LOOPS_API_KEY = None
    LOOPS_DEFAULT_LIST_ID = None
    OPENAI_API_KEY = None


class ProductionConfig(Config):
    DEBUG = False
    uri = os.environ.get("DATABASE_URL")  # Heroku-style postgres:// URLs
    if uri and uri.startswith("postgres://"):
        uri = uri.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = uri
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}
