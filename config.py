import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        installment_delete_policy: str,
        quote_provider: str,
        quote_symbol_suffix: str,
        quote_timeout_secs: float,
        quote_retries: int,
        scheduler_enabled: bool,
        price_refresh_minutes: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.installment_delete_policy = installment_delete_policy
        self.quote_provider = quote_provider
        self.quote_symbol_suffix = quote_symbol_suffix
        self.quote_timeout_secs = quote_timeout_secs
        self.quote_retries = quote_retries
        self.scheduler_enabled = scheduler_enabled
        self.price_refresh_minutes = price_refresh_minutes


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("LEDGER_TIMEZONE", "America/Sao_Paulo")
    installment_delete_policy = os.getenv(
        "LEDGER_INSTALLMENT_DELETE_POLICY", "preserve_history"
    )
    quote_provider = os.getenv("LEDGER_QUOTE_PROVIDER", "yahoo")
    quote_symbol_suffix = os.getenv("LEDGER_QUOTE_SYMBOL_SUFFIX", "")
    quote_timeout_secs = float(os.getenv("LEDGER_QUOTE_TIMEOUT_SECS", "10"))
    quote_retries = max(1, int(os.getenv("LEDGER_QUOTE_RETRIES", "2")))
    scheduler_enabled = _env_flag("LEDGER_SCHEDULER_ENABLED", "1")
    price_refresh_minutes = int(os.getenv("LEDGER_PRICE_REFRESH_MINUTES", "30"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        installment_delete_policy=installment_delete_policy,
        quote_provider=quote_provider,
        quote_symbol_suffix=quote_symbol_suffix,
        quote_timeout_secs=quote_timeout_secs,
        quote_retries=quote_retries,
        scheduler_enabled=scheduler_enabled,
        price_refresh_minutes=price_refresh_minutes,
    )
