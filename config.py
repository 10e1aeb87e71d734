import os
import logging
from dataclasses import dataclass, field
from typing import List, Optional

logger = logging.getLogger(__name__)

DEV_JWT_SECRET = "dev-access-secret-change-me"
DEV_JWT_REFRESH_SECRET = "dev-refresh-secret-change-me"


def _csv(value: str) -> List[str]:
    return [v.strip() for v in value.split(",") if v.strip()]


@dataclass(frozen=True)
class Settings:
    database_url: Optional[str] = None
    database_name: str = "storefront"
    jwt_secret: str = DEV_JWT_SECRET
    jwt_refresh_secret: str = DEV_JWT_REFRESH_SECRET
    jwt_access_ttl_minutes: int = 15
    jwt_refresh_ttl_days: int = 7
    jwt_issuer: str = "storefront-api"
    jwt_audience: str = "storefront-users"
    payment_callback_secret: str = "demo-payment-secret"
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    log_level: str = "INFO"
    port: int = 8000
    admin_email: Optional[str] = None
    admin_password: Optional[str] = None

    @classmethod
    def from_env(cls) -> "Settings":
        jwt_secret = os.getenv("JWT_SECRET")
        refresh_secret = os.getenv("JWT_REFRESH_SECRET")
        if not jwt_secret or not refresh_secret:
            logger.warning("JWT_SECRET / JWT_REFRESH_SECRET not set, using development secrets")
        return cls(
            database_url=os.getenv("DATABASE_URL") or None,
            database_name=os.getenv("DATABASE_NAME", "storefront"),
            jwt_secret=jwt_secret or DEV_JWT_SECRET,
            jwt_refresh_secret=refresh_secret or DEV_JWT_REFRESH_SECRET,
            jwt_access_ttl_minutes=int(os.getenv("JWT_ACCESS_TTL_MINUTES", 15)),
            jwt_refresh_ttl_days=int(os.getenv("JWT_REFRESH_TTL_DAYS", 7)),
            jwt_issuer=os.getenv("JWT_ISSUER", "storefront-api"),
            jwt_audience=os.getenv("JWT_AUDIENCE", "storefront-users"),
            payment_callback_secret=os.getenv("PAYMENT_CALLBACK_SECRET", "demo-payment-secret"),
            cors_origins=_csv(os.getenv("CORS_ORIGINS", "*")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            port=int(os.getenv("PORT", 8000)),
            admin_email=os.getenv("ADMIN_EMAIL") or None,
            admin_password=os.getenv("ADMIN_PASSWORD") or None,
        )
