import os
import logging
from pydantic import BaseModel, Field
from typing import List
from dotenv import load_dotenv

load_dotenv()


def _csv_env(name: str, default: str) -> List[str]:
    return [v.strip() for v in os.getenv(name, default).split(",") if v.strip()]


class LedgerSettings(BaseModel):
    # Attempts for a unit of work that lost an optimistic-lock race on a balance row
    retry_attempts: int = Field(default=int(os.getenv("LEDGER_RETRY_ATTEMPTS", "3")))
    retry_wait_seconds: float = Field(default=float(os.getenv("LEDGER_RETRY_WAIT_SECONDS", "0.05")))
    probation_months: int = Field(default=int(os.getenv("PROBATION_MONTHS", "3")))


class Config(BaseModel):
    app_name: str = "Leave Engine"
    environment: str = os.getenv("APP_ENV", "development")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    api_prefix: str = "/api"

    # Database
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./leave_engine.db")

    # Auth (tokens are issued by the identity provider, only verified here)
    secret_key: str = os.getenv("SECRET_KEY", "dev-only-insecure-key-DO-NOT-USE-IN-PROD")
    jwt_algorithm: str = os.getenv("JWT_ALGORITHM", "HS256")
    access_token_expire_minutes: int = 60 * 24  # 24 hours

    # Roles that may act on any leave request in their company
    admin_override_roles: List[str] = Field(
        default_factory=lambda: _csv_env("ADMIN_OVERRIDE_ROLES", "SUPER_ADMIN,HR_ADMIN")
    )

    ledger: LedgerSettings = LedgerSettings()

    version: str = "1.0.0"
    build_id: str = os.getenv("BUILD_ID", "local")
    request_id_header: str = "X-Request-ID"

    cors_origins: List[str] = Field(
        default_factory=lambda: _csv_env(
            "CORS_ORIGINS",
            "http://localhost:3000,http://localhost:5173,"
            "http://127.0.0.1:3000,http://127.0.0.1:5173",
        )
    )

    rate_limit_per_minute: int = int(os.getenv("RATE_LIMIT_PER_MINUTE", "60"))
    # Fernet key used for contact details stored on leave requests
    encryption_key: str = os.getenv("ENCRYPTION_KEY", "ZGV2LW9ubHkta2V5LWxlYXZlLWVuZ2luZS0wMDAwMDA=")


settings = Config()

# --- Startup Validation for Production ---
_logger = logging.getLogger(__name__)
if settings.environment not in ("development", "testing"):
    _critical_missing = []
    if "dev-only" in settings.secret_key:
        _critical_missing.append("SECRET_KEY")
    if not os.getenv("ENCRYPTION_KEY"):
        _critical_missing.append("ENCRYPTION_KEY")
    if _critical_missing:
        raise RuntimeError(
            f"FATAL: The following secrets must be set for non-development environments: "
            f"{', '.join(_critical_missing)}. Set them as environment variables."
        )
else:
    if "dev-only" in settings.secret_key:
        _logger.warning("Using insecure default SECRET_KEY, only acceptable in development.")
