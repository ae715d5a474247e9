import os


def _as_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    try:
        return int(raw) if raw is not None else int(default)
    except (TypeError, ValueError):
        return int(default)


def _as_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    try:
        return float(raw) if raw is not None else float(default)
    except (TypeError, ValueError):
        return float(default)


def engine_options(database_url: str) -> dict:
    options = {"pool_pre_ping": True}
    if database_url.startswith("sqlite"):
        # Pooled connections move between request threads and geo workers.
        options["connect_args"] = {
            "timeout": _as_float("DB_BUSY_TIMEOUT", 15.0),
            "check_same_thread": False,
        }
    pool_size = os.getenv("DB_POOL_SIZE")
    if pool_size:
        options["pool_size"] = _as_int("DB_POOL_SIZE", 5)
    return options


class Config:
    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URL", "sqlite:///sinsuan.db")
    SQLALCHEMY_ENGINE_OPTIONS = engine_options(SQLALCHEMY_DATABASE_URI)
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper()

    SINSUAN_ID_HEADER = os.getenv("SINSUAN_ID_HEADER", "X-Sinsuan-Id")
    SINSUAN_COUNT_URL_HEADER = os.getenv("SINSUAN_COUNT_URL_HEADER", "X-Sinsuan-Count-Url")
    CLIENT_IP_HEADER = os.getenv("CLIENT_IP_HEADER", "X-Real-IP")

    QQ_MAP_BASE_URL = os.getenv("QQ_MAP_BASE_URL", "https://apis.map.qq.com")
    QQ_MAP_KEY = os.getenv("QQ_MAP_KEY", "")
    QQ_MAP_SK = os.getenv("QQ_MAP_SK", "")
    QQ_MAP_TIMEOUT = _as_float("QQ_MAP_TIMEOUT", 3.0)
    GEO_RESOLVE_WORKERS = _as_int("GEO_RESOLVE_WORKERS", 2)
