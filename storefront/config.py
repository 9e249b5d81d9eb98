"""Runtime configuration for the app, read from the environment once at import."""
import logging
import os
import sys
from typing import NamedTuple, Optional


class Settings(NamedTuple):
    database_url: str
    jwt_secret: str
    jwt_exp_seconds: int
    reset_token_exp_seconds: int
    app_env: str
    frontend_url: str
    host: str
    port: int
    upload_dir: str
    static_prefix: str
    log_level: str
    admin_username: Optional[str]
    admin_email: Optional[str]
    admin_password: Optional[str]

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def cors_origin(self) -> str:
        # Only the deployed frontend may call us in production
        if self.is_production:
            return self.frontend_url
        return "http://localhost:3000"


def load_settings() -> Settings:
    return Settings(
        database_url=os.getenv("DATABASE_URL", "sqlite:///./storefront.db"),
        jwt_secret=os.getenv("JWT_SECRET", "dev-secret"),
        jwt_exp_seconds=int(os.getenv("JWT_EXP_SECONDS", str(60 * 60 * 24))),
        reset_token_exp_seconds=int(os.getenv("RESET_TOKEN_EXP_SECONDS", str(60 * 60))),
        app_env=os.getenv("APP_ENV", "development"),
        frontend_url=os.getenv("FRONTEND_URL", "http://localhost:3000"),
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "5000")),
        upload_dir=os.getenv("UPLOAD_DIR", "uploads"),
        static_prefix=os.getenv("STATIC_PREFIX", "/images"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        admin_username=os.getenv("ADMIN_USERNAME") or None,
        admin_email=os.getenv("ADMIN_EMAIL") or None,
        admin_password=os.getenv("ADMIN_PASSWORD") or None,
    )


settings = load_settings()


def configure_logging(level: Optional[str] = None):
    """Attach a single stdout handler to the ``storefront`` logger tree."""
    log = logging.getLogger("storefront")
    log.setLevel(level or settings.log_level)
    if not log.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
        log.addHandler(handler)
    return log
