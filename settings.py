import json
from typing import Annotated, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """
    Environment-driven configuration, prefix STOREFRONT_ (case-insensitive).

    Built once by ``main.create_app`` and handed to every component that needs
    it; nothing reads the environment after startup.
    """

    app_name: str = "Marketplace Storefront API"
    port: int = 8000
    log_level: str = "INFO"

    # ---- MongoDB ----
    database_url: str = "mongodb://localhost:27017"
    database_name: str = "storefront"

    # ---- Xendit ----
    xendit_secret_key: Optional[str] = None
    xendit_base_url: str = "https://api.xendit.co"
    xendit_callback_token: Optional[str] = None
    gateway_timeout_seconds: float = 15.0
    public_url: str = Field(default="http://localhost:3000", description="Base URL the gateway calls back")

    # ---- Checkout ----
    currency: str = "IDR"
    subtotal_tolerance: float = 0.01
    order_ttl_days: int = 7
    default_bank_code: str = "BCA"

    # ---- Web ----
    # NoDecode keeps the env value raw so the CSV form reaches _split_csv
    cors_origins: Annotated[List[str], NoDecode] = Field(default_factory=lambda: ["*"])

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="STOREFRONT_",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("cors_origins", mode="before")
    @classmethod
    def _split_csv(cls, v):
        # accept "a,b" as well as a JSON list
        if not isinstance(v, str):
            return v
        s = v.strip()
        if s.startswith("["):
            return json.loads(s)
        return [p.strip() for p in s.split(",") if p.strip()]

    @property
    def callback_url(self) -> str:
        return f"{self.public_url.rstrip('/')}/payments/xendit/callback"
