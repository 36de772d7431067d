"""
Configuration centrale de l'application
"""
import json
import os
from typing import Annotated, List, Optional
from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Configuration de l'application"""

    model_config = SettingsConfigDict(
        env_file=os.path.join(os.path.dirname(os.path.dirname(os.path.dirname(__file__))), ".env"),
        case_sensitive=True,
        extra="ignore",  # Ignore les variables non déclarées dans le .env
    )

    # Application
    APP_NAME: str = "Results Computation Engine"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    API_V1_STR: str = "/api/v1"

    # CORS (List[str] pour accepter '*' et URLs réelles)
    BACKEND_CORS_ORIGINS: Annotated[List[str], NoDecode] = []

    @field_validator("BACKEND_CORS_ORIGINS", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v):
        if isinstance(v, str) and not v.startswith("["):
            return [i.strip() for i in v.split(",") if i.strip()]
        elif isinstance(v, str):
            return json.loads(v)
        elif isinstance(v, list):
            return v
        raise ValueError(v)

    # Firebase: JSON content or path to the service account file
    FIREBASE_CREDENTIALS_JSON: Optional[str] = None

    # Computation engine
    COMPUTATION_BATCH_SIZE: int = 100
    COMPUTATION_FLUSH_THRESHOLD: int = 100
    COMPUTATION_CONCURRENCY: int = 3
    COMPUTATION_MAX_RETRIES: int = 2
    SUMMARY_LIST_LIMIT: int = 100

    @field_validator(
        "COMPUTATION_BATCH_SIZE",
        "COMPUTATION_FLUSH_THRESHOLD",
        "COMPUTATION_CONCURRENCY",
        "SUMMARY_LIST_LIMIT",
    )
    @classmethod
    def must_be_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be a positive integer")
        return v

    @field_validator("COMPUTATION_MAX_RETRIES")
    @classmethod
    def must_not_be_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must not be negative")
        return v

    # Logging
    LOG_LEVEL: str = "INFO"


# Instance unique pour l'application
settings = Settings()
