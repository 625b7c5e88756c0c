import os
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./ledger.db")
    kafka_bootstrap: str = os.getenv("KAFKA_BOOTSTRAP", "kafka:9092")

    jwt_issuer: str = os.getenv("JWT_ISSUER", "vendor-ledger")
    jwt_secret: str = os.getenv("JWT_SECRET", "dev-secret-change")
    internal_jwt_ttl_seconds: int = int(os.getenv("INTERNAL_JWT_TTL_SECONDS", "300"))

    ledger_currency: str = os.getenv("LEDGER_CURRENCY", "MXN")
    default_commission_percent: float = float(os.getenv("DEFAULT_COMMISSION_PERCENT", "15"))

    # Payout policy, amounts in minor units
    payout_min_threshold: int = int(os.getenv("PAYOUT_MIN_THRESHOLD", "500"))
    payout_min_residual: int = int(os.getenv("PAYOUT_MIN_RESIDUAL", "100"))
    payout_default_fraction: float = float(os.getenv("PAYOUT_DEFAULT_FRACTION", "0.5"))
    payout_run_at: str = os.getenv("PAYOUT_RUN_AT", "02:00")

    payment_rail_url: str = os.getenv("PAYMENT_RAIL_URL", "")
    payment_rail_timeout: float = float(os.getenv("PAYMENT_RAIL_TIMEOUT", "10"))

    balance_retry_attempts: int = int(os.getenv("BALANCE_RETRY_ATTEMPTS", "5"))
    balance_retry_base_delay: float = float(os.getenv("BALANCE_RETRY_BASE_DELAY", "0.05"))

    outbox_poll_interval: float = float(os.getenv("OUTBOX_POLL_INTERVAL", "0.5"))
    outbox_batch_size: int = int(os.getenv("OUTBOX_BATCH_SIZE", "50"))
    outbox_flush_timeout: float = float(os.getenv("OUTBOX_FLUSH_TIMEOUT", "5"))
    outbox_max_attempts: int = int(os.getenv("OUTBOX_MAX_ATTEMPTS", "10"))

settings = Settings()
