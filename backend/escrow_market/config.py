from pydantic_settings import BaseSettings
from typing import Optional
import os
from dotenv import load_dotenv

load_dotenv()


# Fixed by policy; the auto-release window below is configurable but the
# refund window is not.
REFUND_WINDOW_DAYS = 30


class Settings(BaseSettings):
    SECRET_KEY: str = "your-secret-key-change-in-production"
    JWT_SECRET: Optional[str] = None
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 300
    DEBUG: bool = False

    # Any SQLAlchemy URL. Production runs on Postgres; the SQLite file is only
    # meant for local development.
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./escrow_market.db")

    ALLOWED_ORIGINS: str = "http://localhost:5173,http://localhost:3000"

    # Escrow is released to the seller this many days after delivery unless
    # the buyer approves earlier or a dispute is in progress.
    ESCROW_HOLD_DAYS: int = 7

    # Pricing inputs consumed by order creation.
    FREE_SHIPPING_THRESHOLD: float = 1000
    FLAT_SHIPPING_FEE: float = 60
    DEFAULT_CURRENCY: str = "BDT"

    # Auto-release sweep. Every replica may run it; the per-order update is
    # guarded on escrow_status so overlapping sweeps never double-release.
    AUTO_RELEASE_INTERVAL_SECONDS: int = 300
    AUTO_RELEASE_BATCH_SIZE: int = 200
    START_BACKGROUND_WORKERS: bool = True

    # Trust score bonus granted to a user when their seller profile is verified.
    VERIFICATION_TRUST_BONUS: int = 50

    class Config:
        env_file = None
        env_file_encoding = "utf-8"
        extra = "ignore"

    @property
    def secret_key(self) -> str:
        return self.JWT_SECRET or self.SECRET_KEY

    @property
    def allowed_origins(self) -> list[str]:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",") if o.strip()]


settings = Settings()
