from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    PROJECT_NAME: str = "Ops Desk"
    LOG_LEVEL: str = "INFO"

    # Hosted data service. Empty URL selects the in-memory backend.
    SUPABASE_URL: str = ""
    SUPABASE_KEY: str = ""

    # Durable client storage. Empty path keeps slots in process memory.
    STORAGE_PATH: str = ".opsdesk/client_storage.json"

    SESSION_TTL_HOURS: float = 8
    REFRESH_DEBOUNCE_SECONDS: float = 0.8
    POLL_INTERVAL_SECONDS: float = 60
    ACTIVITY_LIMIT: int = 50

    CONFIG_ROW_ID: int = 1
    IMPOSSIBLE_ID: int = -1

    DEFAULT_NEXT_INVOICE_ID: int = 1001
    DEFAULT_TAX_RATE: float = 16
    DEFAULT_CURRENCY: str = "KSh"

    # admin/admin recovery login when no user row matches
    EMERGENCY_ADMIN_ENABLED: bool = True

    class Config:
        case_sensitive = True

settings = Settings()
