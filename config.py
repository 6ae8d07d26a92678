import logging
import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel

DEV_SECRET = "dev-secret-change-me-0123456789abcdef"


class Settings(BaseModel):
    mongodb_uri: str = "mongodb://localhost:27017"
    database_name: str = "blood_donor"
    jwt_secret: str = DEV_SECRET
    jwt_expire_minutes: int = 7 * 24 * 60
    bloodbank_token_expire_minutes: int = 7 * 24 * 60
    bcrypt_rounds: int = 12
    environment: str = "development"
    frontend_url: str = "http://localhost:5173"
    admin_email: Optional[str] = None
    admin_password: Optional[str] = None
    urgent_request_webhook_url: Optional[str] = None
    notify_timeout: float = 6.0
    log_level: str = "INFO"
    server_selection_timeout_ms: int = 5000
    socket_timeout_ms: int = 45000
    max_pool_size: int = 10

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        return cls(
            mongodb_uri=os.getenv("MONGODB_URI", "mongodb://localhost:27017"),
            database_name=os.getenv("MONGODB_DB", "blood_donor"),
            jwt_secret=os.getenv("JWT_SECRET", DEV_SECRET),
            jwt_expire_minutes=int(os.getenv("JWT_EXPIRE_MINUTES", str(7 * 24 * 60))),
            bloodbank_token_expire_minutes=int(os.getenv("BLOODBANK_TOKEN_EXPIRE_MINUTES", str(7 * 24 * 60))),
            bcrypt_rounds=int(os.getenv("BCRYPT_ROUNDS", "12")),
            environment=os.getenv("ENVIRONMENT", "development"),
            frontend_url=os.getenv("FRONTEND_URL", "http://localhost:5173"),
            admin_email=os.getenv("ADMIN_EMAIL"),
            admin_password=os.getenv("ADMIN_PASSWORD"),
            urgent_request_webhook_url=os.getenv("URGENT_REQUEST_WEBHOOK_URL") or None,
            notify_timeout=float(os.getenv("NOTIFY_TIMEOUT", "6")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
