from __future__ import annotations

import os
from collections.abc import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker


def _get_int(name: str, default: int) -> int:
    val = os.getenv(name)
    if val is None or val == "":
        return default
    return int(val)


def _get_float(name: str, default: float) -> float:
    val = os.getenv(name)
    if val is None or val == "":
        return default
    return float(val)


def _get_bool(name: str, default: bool) -> bool:
    val = os.getenv(name)
    if val is None or val == "":
        return default
    return val.strip().lower() in {"1", "true", "yes", "y", "on"}


class Settings:
    database_url: str = os.getenv("DATABASE_URL") or os.getenv("AP2_GATEWAY_DATABASE_URL", "sqlite:///./ap2_gateway.db")

    auto_create_schema: bool = _get_bool("AP2_GATEWAY_AUTO_CREATE_SCHEMA", True)
    run_background_tasks: bool = _get_bool("AP2_GATEWAY_RUN_BACKGROUND_TASKS", True)

    host: str = os.getenv("AP2_GATEWAY_HOST", "127.0.0.1")
    port: int = _get_int("AP2_GATEWAY_PORT", 3000)

    # Merchant credentials
    api_key_salt_rounds: int = _get_int("AP2_GATEWAY_API_KEY_SALT_ROUNDS", 10)
    admin_token: str = os.getenv("AP2_GATEWAY_ADMIN_TOKEN", "")

    # Replay protection window for signed requests
    signature_max_age_seconds: int = _get_int("AP2_GATEWAY_SIGNATURE_MAX_AGE", 300)

    # Purchase intents
    default_intent_expiry_hours: int = _get_int("AP2_GATEWAY_INTENT_EXPIRY_HOURS", 24)

    # Webhooks
    webhook_timeout_seconds: float = _get_float("AP2_GATEWAY_WEBHOOK_TIMEOUT", 10.0)
    webhook_max_attempts: int = _get_int("AP2_GATEWAY_WEBHOOK_MAX_ATTEMPTS", 5)
    webhook_sweep_interval_seconds: int = _get_int("AP2_GATEWAY_WEBHOOK_SWEEP_INTERVAL", 60)
    webhook_sweep_batch_size: int = _get_int("AP2_GATEWAY_WEBHOOK_SWEEP_BATCH", 10)
    webhook_retention_days: int = _get_int("AP2_GATEWAY_WEBHOOK_RETENTION_DAYS", 30)


settings = Settings()


def _connect_args(database_url: str) -> dict:
    if database_url.startswith("sqlite:"):
        return {"check_same_thread": False}
    return {}


engine = create_engine(
    settings.database_url,
    future=True,
    pool_pre_ping=True,
    connect_args=_connect_args(settings.database_url),
)

SessionLocal = sessionmaker(
    bind=engine,
    class_=Session,
    expire_on_commit=False,
    autoflush=False,
    autobegin=False,
)


def get_session() -> Generator[Session, None, None]:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
