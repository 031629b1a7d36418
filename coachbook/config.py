from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite+aiosqlite:///./coachbook.db"

    timezone: str = "Asia/Manila"
    store_timeout_seconds: float = 5.0
    payment_expiry_minutes: int = 60

    general_access_price: int = 350
    self_scheduled_price: int = 250

    scheduler_api_key: str = ""
    scheduler_service_account: str = ""

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
