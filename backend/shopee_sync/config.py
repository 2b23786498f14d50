from pydantic_settings import BaseSettings
from typing import Optional, Tuple
import os
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    SECRET_KEY: str = "your-secret-key-change-in-production"
    JWT_SECRET: Optional[str] = None
    DEBUG: bool = False

    @property
    def secret_key(self) -> str:
        return self.JWT_SECRET or self.SECRET_KEY

    # DATABASE_URL is provided via environment (Supabase/Postgres in production).
    # SQLite is accepted for local runs and the test-suite.
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./shopee_sync.db")

    # Process-wide default Shopee partner credentials. A shop row may carry its
    # own partner_id / partner_key which take precedence over these.
    SHOPEE_PARTNER_ID: Optional[int] = None
    SHOPEE_PARTNER_KEY: str = ""
    SHOPEE_BASE_URL: str = "https://partner.shopeemobile.com"

    # Optional forwarding proxy. When set, every Shopee call is sent to
    # "{SHOPEE_PROXY_URL}?url=<urlencoded target>".
    SHOPEE_PROXY_URL: Optional[str] = None

    SHOPEE_HTTP_TIMEOUT_SECONDS: float = 30.0
    # Minimum spacing between two outgoing Shopee calls (per client instance).
    SHOPEE_MIN_REQUEST_INTERVAL_SECONDS: float = 0.0

    # Hard ceiling for one sync invocation. Edge hosts kill requests at ~60s,
    # so we stop starting new units of work well before that.
    ORDERS_SYNC_TIME_BUDGET_SECONDS: float = 40.0
    ORDERS_SYNC_MAX_ORDERS_PER_CHUNK: int = 200
    # A lease older than this is treated as abandoned by a crashed invocation.
    ORDERS_SYNC_LEASE_TTL_MINUTES: int = 10

    # Refresh stored access tokens proactively when they expire within this window.
    SHOPEE_TOKEN_REFRESH_THRESHOLD_HOURS: int = 3

    ALLOWED_ORIGINS: str = "http://localhost:5173,http://localhost:3000"

    class Config:
        env_file = None
        env_file_encoding = "utf-8"
        extra = "ignore"

    @property
    def shopee_partner_credentials(self) -> Tuple[Optional[int], str]:
        return self.SHOPEE_PARTNER_ID, self.SHOPEE_PARTNER_KEY


settings = Settings()
