from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    # Application
    APP_NAME: str = "JPK Reporting"
    DEBUG: bool = False
    ENV: str = "production"

    # Database
    DATABASE_URL: str = "postgresql+asyncpg://jpk_user:change_me@db:5432/jpk_db"
    DATABASE_URL_SYNC: str = "postgresql://jpk_user:change_me@db:5432/jpk_db"

    # Artifact storage (generated, signed and receipt documents)
    JPK_STORAGE_DIR: str = "/data/jpk"

    # Ministry of Finance gateway
    JPK_GATEWAY_URL: str = "https://bramka-v3.mf.gov.pl"
    JPK_GATEWAY_TEST_URL: str = "https://bramka-v3.t.mf.gov.pl"
    JPK_GATEWAY_TIMEOUT_SECONDS: float = 30.0

    def gateway_url(self, sandbox: bool) -> str:
        """Pick the sandbox or production gateway base URL."""
        return self.JPK_GATEWAY_TEST_URL if sandbox else self.JPK_GATEWAY_URL

    # Signing credentials, per signature type.
    # References accept a plain path/value or "$ENV_VAR".
    JPK_QUALIFIED_CERT_REF: Optional[str] = None
    JPK_QUALIFIED_PASSPHRASE_REF: Optional[str] = None
    JPK_TRUSTED_PROFILE_CERT_REF: Optional[str] = None
    JPK_TRUSTED_PROFILE_PASSPHRASE_REF: Optional[str] = None

    # Header default when the client record has no tax office
    JPK_DEFAULT_TAX_OFFICE_CODE: str = "1401"

    class Config:
        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
