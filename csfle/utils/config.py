"""Application Configuration"""

from pydantic_settings import BaseSettings
from typing import List, Optional
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings"""

    APP_NAME: str = "CSFLE Engine"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"

    ALLOWED_ORIGINS: List[str] = ["http://localhost:3000"]

    # Key vault: "memory" or "mongodb"
    KEY_VAULT_BACKEND: str = "memory"
    MONGODB_URI: str = "mongodb://localhost:27017"
    KEY_VAULT_NAMESPACE: str = "encryption.__keyVault"

    # Local master key, base64 of 96 bytes, or a file holding it
    LOCAL_MASTER_KEY: Optional[str] = None
    LOCAL_MASTER_KEY_PATH: Optional[str] = None

    # AWS
    AWS_REGION: str = "us-east-1"
    KMS_KEY_ID: Optional[str] = None

    # JSON file mapping "<db>.<collection>" to encryption schemas
    SCHEMA_MAP_PATH: Optional[str] = None

    class Config:
        env_file = ".env"


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
