from pathlib import Path
from typing import List

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

ENV_PATH = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=ENV_PATH)


class Settings(BaseSettings):
    ENV: str = "development"

    DATABASE_URL: str = "sqlite:///./poster_campaign.db"

    JWT_SECRET_KEY: str
    JWT_REFRESH_SECRET_KEY: str
    JWT_ALGORITHM: str = "HS256"
    JWT_ISSUER: str = "poster-campaign-api"
    JWT_AUDIENCE: str = "poster-campaign-client"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15
    REFRESH_TOKEN_EXPIRE_DAYS: int = 7

    FRONTEND_URL: str = "http://localhost:5173"

    STORAGE_PATH: str = "storage"
    MAX_FILE_SIZE: int = 10 * 1024 * 1024
    ALLOWED_MIME_TYPES: str = "image/jpeg,image/jpg,image/png,image/gif,image/webp"

    SESSION_TIMEOUT_HOURS: int = 24
    MAX_SESSIONS_PER_USER: int = 5

    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("ALLOWED_MIME_TYPES")
    @classmethod
    def validate_mime_types(cls, value: str) -> str:
        types = [t.strip().lower() for t in value.split(",") if t.strip()]
        if not types:
            raise ValueError("ALLOWED_MIME_TYPES must include at least one type")
        return ",".join(types)

    @property
    def allowed_mime_types(self) -> List[str]:
        return self.ALLOWED_MIME_TYPES.split(",")

    @property
    def is_production(self) -> bool:
        return self.ENV.lower() == "production"


settings = Settings()
