from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Remote SQL store (Cloudflare D1 HTTP API)
    CLOUDFLARE_ACCOUNT_ID: Optional[str] = None
    CLOUDFLARE_D1_DATABASE_ID: Optional[str] = None
    CLOUDFLARE_API_TOKEN: Optional[str] = None
    D1_API_BASE_URL: str = "https://api.cloudflare.com/client/v4"

    # Object store (R2 through the S3 API)
    R2_ACCESS_KEY_ID: Optional[str] = None
    R2_SECRET_ACCESS_KEY: Optional[str] = None
    R2_ENDPOINT: Optional[str] = None
    R2_BUCKET_NAME: Optional[str] = None
    R2_PUBLIC_DOMAIN: str = ""
    R2_USER_HASH_SALT: str = ""

    # Bearer tokens
    SECRET_KEY: Optional[str] = None
    ALGORITHM: str = "HS256"

    AUTO_CREATE_SCHEMA: bool = False
    LOG_LEVEL: str = "INFO"

    # This tells Pydantic to read from the .env file
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Create a single instance of the settings to use everywhere
settings = Settings()
