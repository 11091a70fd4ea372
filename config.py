import os
from decimal import Decimal
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str = "UTC",
        epsilon: Decimal = Decimal("0.01"),
        store_timeout_secs: float = 10.0,
        store_max_attempts: int = 3,
        conflict_max_attempts: int = 5,
        backoff_multiplier: float = 0.5,
        backoff_min_secs: float = 0.1,
        backoff_max_secs: float = 5.0,
        reconcile_workers: int = 1,
        default_forecast_horizon: int = 12,
        max_forecast_horizon: int = 120,
        max_catch_up_steps: int = 400,
        log_level: str = "INFO",
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.epsilon = epsilon
        self.store_timeout_secs = store_timeout_secs
        self.store_max_attempts = store_max_attempts
        self.conflict_max_attempts = conflict_max_attempts
        self.backoff_multiplier = backoff_multiplier
        self.backoff_min_secs = backoff_min_secs
        self.backoff_max_secs = backoff_max_secs
        self.reconcile_workers = reconcile_workers
        self.default_forecast_horizon = default_forecast_horizon
        self.max_forecast_horizon = max_forecast_horizon
        self.max_catch_up_steps = max_catch_up_steps
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("BUDGET_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("BUDGET_DATABASE_URL")
    if not database_url:
        default_db = _ensure_data_dir() / "budget.db"
        database_url = f"sqlite:///{default_db}"
    return Settings(
        database_url=database_url,
        timezone=os.getenv("BUDGET_TIMEZONE", "UTC"),
        epsilon=Decimal(os.getenv("BUDGET_EPSILON", "0.01")),
        store_timeout_secs=float(os.getenv("BUDGET_STORE_TIMEOUT_SECS", "10")),
        store_max_attempts=int(os.getenv("BUDGET_STORE_MAX_ATTEMPTS", "3")),
        conflict_max_attempts=int(os.getenv("BUDGET_CONFLICT_MAX_ATTEMPTS", "5")),
        backoff_multiplier=float(os.getenv("BUDGET_BACKOFF_MULTIPLIER", "0.5")),
        backoff_min_secs=float(os.getenv("BUDGET_BACKOFF_MIN_SECS", "0.1")),
        backoff_max_secs=float(os.getenv("BUDGET_BACKOFF_MAX_SECS", "5")),
        reconcile_workers=int(os.getenv("BUDGET_RECONCILE_WORKERS", "1")),
        default_forecast_horizon=int(os.getenv("BUDGET_FORECAST_HORIZON", "12")),
        max_forecast_horizon=int(os.getenv("BUDGET_MAX_FORECAST_HORIZON", "120")),
        max_catch_up_steps=int(os.getenv("BUDGET_MAX_CATCH_UP_STEPS", "400")),
        log_level=os.getenv("BUDGET_LOG_LEVEL", "INFO"),
    )
