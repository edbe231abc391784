"""
Configuration Management Module

Provides environment-based configuration using pydantic-settings. A config
object is built once at startup and handed to every component that needs it.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional


class FamilyBankConfig(BaseSettings):
    """Family bank ledger service configuration"""

    # Database configuration
    database_url: str = "sqlite:///family_bank.db"  # or postgresql://..., memory://
    database_pool_min: int = 1
    database_pool_max: int = 10
    auto_create_schema: bool = True

    # Identity configuration
    jwt_public_key: str = ""  # PEM, or base64 DER SubjectPublicKeyInfo
    jwt_public_key_modulus: str = ""  # hex RSA modulus, alternative to jwt_public_key
    jwt_public_key_exponent: int = 65537
    jwt_algorithm: str = "RS256"
    jwt_role_claim: str = "https://jan.monster/role"
    jwt_account_claim: str = "https://jan.monster/account"
    jwt_audience: Optional[str] = None
    jwt_issuer: Optional[str] = None
    jwt_leeway_seconds: int = 0
    jwt_require_expiry: bool = True

    # Ledger configuration
    page_size: int = 10

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8080
    cors_allowed_origins: List[str] = ["https://jan.monster"]
    ping_path: str = ""  # Empty = no ping route

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    model_config = SettingsConfigDict(
        env_prefix="FAMILY_BANK_",
        env_file=".env",
        case_sensitive=False,
    )


def get_config() -> FamilyBankConfig:
    """Build configuration from the environment"""
    return FamilyBankConfig()
