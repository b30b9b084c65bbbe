from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List

class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    APP_ENV: str = "local"
    APP_NAME: str = "crudkit"

    DATABASE_URL: str = "sqlite+pysqlite:///./crudkit.db"

    CORS_ORIGINS: str = "http://localhost:3000"

    JWT_SECRET: str = "change_me_jwt"
    JWT_ALGORITHM: str = "HS256"
    JWT_TTL_MINUTES: int = 240

    # Page size when a list request names none; the query builder still
    # clamps every request to 1..1000.
    DEFAULT_PER_PAGE: int = 10

    # Budget for a single request's storage calls, 0 disables the deadline.
    REQUEST_TIMEOUT_SECONDS: float = 30.0

    # Pass raw storage error text to HTTP clients (local debugging only).
    EXPOSE_STORAGE_ERRORS: bool = False

    @property
    def cors_origins_list(self) -> List[str]:
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

settings = Settings()
