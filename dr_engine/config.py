import json
import os

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, model_validator

load_dotenv()


_TRUTHY_VALUES = {"1", "true", "yes", "on"}


def _env_bool(name: str, default: str = "") -> bool:
    return os.getenv(name, default).lower() in _TRUTHY_VALUES


def _env_json(name: str) -> dict[str, str]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return {}
    value = json.loads(raw)
    if not isinstance(value, dict):
        raise ValueError(f"{name} must be a JSON object")
    return {str(k): str(v) for k, v in value.items()}


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True)

    database_url: str | None = os.getenv("DATABASE_URL")
    db_pool_size: int = int(os.getenv("DB_POOL_SIZE", "5"))
    db_max_overflow: int = int(os.getenv("DB_MAX_OVERFLOW", "10"))
    db_pool_timeout: int = int(os.getenv("DB_POOL_TIMEOUT", "30"))
    db_pool_recycle: int = int(os.getenv("DB_POOL_RECYCLE", "1800"))

    # Runtime flags
    testing: bool = _env_bool("TESTING")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    # Celery
    celery_broker_url: str = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
    celery_result_backend: str = os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/1")

    # Collaborators
    backup_storage_dir: str = os.getenv("BACKUP_STORAGE_DIR", "/var/lib/dr-engine/backups")
    routing_file: str = os.getenv("ROUTING_FILE", "/var/lib/dr-engine/routing.json")
    region_dsns: dict[str, str] = _env_json("REGION_DSNS")
    environment_dsns: dict[str, str] = _env_json("ENVIRONMENT_DSNS")
    # {"staging": "stg-primary:stg-replica"}: regions exercised by failover drills
    environment_failover_pairs: dict[str, str] = _env_json("ENVIRONMENT_FAILOVER_PAIRS")
    source_dsn: str | None = os.getenv("SOURCE_DSN") or None
    change_column: str = os.getenv("CHANGE_COLUMN", "updated_at")
    alert_webhook_url: str | None = os.getenv("ALERT_WEBHOOK_URL") or None

    # Default topology
    primary_region: str = os.getenv("PRIMARY_REGION", "eu-west-1")

    # Health thresholds
    health_interval_seconds: int = int(os.getenv("HEALTH_INTERVAL_SECONDS", "300"))
    health_snapshot_retention_days: int = int(os.getenv("HEALTH_SNAPSHOT_RETENTION_DAYS", "7"))
    lag_warning_seconds: float = float(os.getenv("LAG_WARNING_SECONDS", "60"))
    lag_critical_seconds: float = float(os.getenv("LAG_CRITICAL_SECONDS", "300"))
    saturation_warning_percent: float = float(os.getenv("SATURATION_WARNING_PERCENT", "80"))
    saturation_critical_percent: float = float(os.getenv("SATURATION_CRITICAL_PERCENT", "90"))
    backup_failure_threshold: int = int(os.getenv("BACKUP_FAILURE_THRESHOLD", "3"))
    failover_signal_threshold: int = int(os.getenv("FAILOVER_SIGNAL_THRESHOLD", "2"))
    failover_lag_signal_seconds: float = float(os.getenv("FAILOVER_LAG_SIGNAL_SECONDS", "60"))

    # Replication
    sync_switch_max_lag_seconds: float = float(os.getenv("SYNC_SWITCH_MAX_LAG_SECONDS", "5"))

    # Failover
    safety_max_lag_seconds: float = float(os.getenv("SAFETY_MAX_LAG_SECONDS", "60"))
    safety_check_timeout_seconds: float = float(os.getenv("SAFETY_CHECK_TIMEOUT_SECONDS", "60"))
    drain_grace_seconds: float = float(os.getenv("DRAIN_GRACE_SECONDS", "30"))
    poll_interval_seconds: float = float(os.getenv("POLL_INTERVAL_SECONDS", "1"))

    # Backups
    retention_grace_days: int = int(os.getenv("RETENTION_GRACE_DAYS", "7"))
    read_retry_attempts: int = int(os.getenv("READ_RETRY_ATTEMPTS", "3"))
    read_retry_max_wait_seconds: float = float(os.getenv("READ_RETRY_MAX_WAIT_SECONDS", "4"))

    @model_validator(mode="after")
    def require_database_url_when_not_testing(self) -> "Settings":
        if not self.testing and not (self.database_url and self.database_url.strip()):
            raise ValueError("DATABASE_URL must be set when TESTING is false")
        return self


settings = Settings()
