import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()


def _split_csv(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass
class Settings:
    # Database
    database_url: str = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
    database_name: str = os.getenv("DATABASE_NAME", "library")

    # Tokens
    jwt_key: Optional[str] = os.getenv("JWT_KEY")
    jwt_issuer: Optional[str] = os.getenv("JWT_ISSUER")
    jwt_audience: Optional[str] = os.getenv("JWT_AUDIENCE")
    jwt_algorithm: str = os.getenv("JWT_ALGORITHM", "HS256")
    jwt_expiration_hours: int = int(os.getenv("JWT_EXPIRATION_HOURS", "8"))

    # HTTP
    allowed_origins: List[str] = field(
        default_factory=lambda: _split_csv(os.getenv("ALLOWED_ORIGINS", "http://localhost:3000"))
    )
    port: int = int(os.getenv("PORT", "8000"))

    # Application
    environment: str = os.getenv("ENVIRONMENT", "development")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()
