import os


def _bool_env(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _int_env(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _float_env(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


class Config:
    BASE_DIR = os.path.dirname(os.path.dirname(__file__))
    DATABASE_URL = os.environ.get("DATABASE_URL")
    DATABASE_DIR = None if DATABASE_URL else os.path.join(BASE_DIR, "database")
    DB_PATH = DATABASE_URL or os.path.join(DATABASE_DIR, "pedidos.db")
    DB_AUTO_INIT = _bool_env("DB_AUTO_INIT", True)

    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-pedidos")
    DEFAULT_STORE_ID = os.environ.get("DEFAULT_STORE_ID", "00000000-0000-0000-0000-000000000000")
    LOG_JSON = _bool_env("LOG_JSON", True)
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    ERP_MODE = os.environ.get("ERP_MODE", "mock")
    ODOO_URL = os.environ.get("ODOO_URL")
    ODOO_DB = os.environ.get("ODOO_DB")
    ODOO_LOGIN = os.environ.get("ODOO_LOGIN")
    ODOO_API_KEY = os.environ.get("ODOO_API_KEY")
    ERP_TIMEOUT_SECONDS = _int_env("ERP_TIMEOUT_SECONDS", 20)
    ERP_VERIFY_SSL = _bool_env("ERP_VERIFY_SSL", True)
    ERP_CIRCUIT_ENABLED = _bool_env("ERP_CIRCUIT_ENABLED", True)
    ERP_CIRCUIT_ERROR_RATE = _float_env("ERP_CIRCUIT_ERROR_RATE", 0.6)
    ERP_CIRCUIT_MIN_SAMPLES = _int_env("ERP_CIRCUIT_MIN_SAMPLES", 5)
    ERP_CIRCUIT_WINDOW_SECONDS = _int_env("ERP_CIRCUIT_WINDOW_SECONDS", 120)
    ERP_CIRCUIT_OPEN_SECONDS = _int_env("ERP_CIRCUIT_OPEN_SECONDS", 30)

    SYNC_SCHEDULER_ENABLED = _bool_env("SYNC_SCHEDULER_ENABLED", False)
    SYNC_SCHEDULER_INTERVAL_SECONDS = _int_env("SYNC_SCHEDULER_INTERVAL_SECONDS", 900)
    SYNC_SCHEDULER_MIN_BACKOFF_SECONDS = _int_env("SYNC_SCHEDULER_MIN_BACKOFF_SECONDS", 30)
    SYNC_SCHEDULER_MAX_BACKOFF_SECONDS = _int_env("SYNC_SCHEDULER_MAX_BACKOFF_SECONDS", 1800)
    SYNC_SCHEDULER_KINDS = os.environ.get(
        "SYNC_SCHEDULER_KINDS", "priceList,salesRep,product,client,priceListItem,order"
    )
    SYNC_SCHEDULER_PUSH_ORDERS = _bool_env("SYNC_SCHEDULER_PUSH_ORDERS", False)
    SYNC_TRIGGER_TOKEN = os.environ.get("SYNC_TRIGGER_TOKEN")
    SYNC_MAX_WORKERS = _int_env("SYNC_MAX_WORKERS", 3)
    PRICELIST_MUTATION_WORKERS = _int_env("PRICELIST_MUTATION_WORKERS", 4)

    def __init__(self):
        env = os.environ.get("FLASK_ENV", "development").lower()
        if env == "production" and not self.DATABASE_URL:
            raise RuntimeError("DATABASE_URL no definida para ambiente de produccion.")
        if env == "production" and self.SECRET_KEY == "dev-secret-pedidos":
            raise RuntimeError("SECRET_KEY insegura para produccion.")
