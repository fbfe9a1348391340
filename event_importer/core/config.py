from typing import Optional

from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./event_importer.db"
    debug: bool = True
    log_level: str = "INFO"

    # Authentication
    secret_key: str = "your-secret-key-change-in-production"

    # Client settings (used by the CLI importer)
    api_base_url: str = "http://localhost:8000"
    api_token: str = ""
    upload_timeout_seconds: int = 300
    import_max_file_size_mb: int = 500

    # Batch import
    import_batch_size: int = 5000  # Rows per client-side upload batch
    import_max_batch_events: int = 10000  # Hard server-side cap per request
    import_history_months: int = 12  # Trailing calendar months accepted by the quota window
    default_monthly_event_limit: Optional[int] = None  # None = unlimited capacity per month

    model_config = ConfigDict(env_file=".env", extra="ignore")


settings = Settings()
