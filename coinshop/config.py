import os
from dataclasses import dataclass, field


class ConfigError(RuntimeError):
    pass


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from exc


@dataclass(frozen=True)
class Settings:
    database_url: str
    jwt_secret: str
    token_ttl_seconds: int | None = None
    starting_balance: int = 1000
    bcrypt_rounds: int = 10
    # Pool: 500 max_connections / ~20 pods ≈ 25 per pod.
    pool_size: int = 15
    max_overflow: int = 5
    pool_timeout: int = 30
    pool_recycle: int = 600
    statement_timeout_ms: int = 5000
    create_schema: bool = True
    seed_catalog: bool = True
    cors_origins: tuple[str, ...] = field(default=("http://localhost:3000",))
    log_level: str = "INFO"
    port: int = 8080


def normalize_database_url(url: str) -> str:
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+psycopg://", 1)
    return url


def load_settings() -> Settings:
    """Read settings from the environment. DATABASE_URL and JWT_SECRET are required."""
    database_url = os.getenv("DATABASE_URL", "").strip()
    if not database_url:
        raise ConfigError("DATABASE_URL is not set")
    jwt_secret = os.getenv("JWT_SECRET", "")
    if not jwt_secret:
        raise ConfigError("JWT_SECRET is not set")

    ttl = _env_int("TOKEN_TTL_SECONDS", 0)
    cors = os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")

    return Settings(
        database_url=normalize_database_url(database_url),
        jwt_secret=jwt_secret,
        token_ttl_seconds=ttl if ttl > 0 else None,
        starting_balance=_env_int("STARTING_BALANCE", 1000),
        bcrypt_rounds=_env_int("BCRYPT_ROUNDS", 10),
        pool_size=_env_int("DB_POOL_SIZE", 15),
        max_overflow=_env_int("DB_MAX_OVERFLOW", 5),
        pool_timeout=_env_int("DB_POOL_TIMEOUT", 30),
        pool_recycle=_env_int("DB_POOL_RECYCLE", 600),
        statement_timeout_ms=_env_int("DB_STATEMENT_TIMEOUT_MS", 5000),
        create_schema=_env_bool("DB_CREATE_SCHEMA", True),
        seed_catalog=_env_bool("SEED_CATALOG", True),
        cors_origins=tuple(x.strip() for x in cors if x.strip()),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        port=_env_int("PORT", 8080),
    )
