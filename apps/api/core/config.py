from functools import lru_cache
import logging
import os


logger = logging.getLogger(__name__)


class Settings:
    def __init__(self) -> None:
        self.app_name = os.getenv("APP_NAME", "consent-grants-api")
        self.app_version = os.getenv("APP_VERSION", "0.0.1")
        self.version_hash = os.getenv("VERSION_HASH", os.getenv("GIT_SHA", "unknown"))
        self.expected_alembic_head = os.getenv("EXPECTED_ALEMBIC_HEAD", "").strip()
        self.env = os.getenv("ENV", "dev").lower()
        if self.env not in {"dev", "test", "staging", "prod"}:
            raise RuntimeError("ENV must be one of: dev, test, staging, prod")
        self.log_level = os.getenv("LOG_LEVEL", "DEBUG" if self.env in {"dev", "test"} else "INFO").upper().strip()

        self.database_url = os.getenv("DATABASE_URL")
        if not self.database_url:
            if self.env == "prod":
                raise RuntimeError("DATABASE_URL is required in prod")
            self.database_url = "postgresql+psycopg://postgres@localhost:5433/consent_grants"
            logger.warning("DATABASE_URL not set, using local dev default")

        self.db_pool_size = int(os.getenv("DB_POOL_SIZE", "5"))
        self.db_max_overflow = int(os.getenv("DB_MAX_OVERFLOW", "10"))
        self.db_pool_timeout = int(os.getenv("DB_POOL_TIMEOUT", "30"))
        self.db_pool_recycle = int(os.getenv("DB_POOL_RECYCLE", "1800"))
        self.db_statement_timeout_ms = int(os.getenv("DB_STATEMENT_TIMEOUT_MS", "15000"))

        self.consent_kind = os.getenv("CONSENT_KIND", "data_sharing").strip()
        self.consent_expiry_days = int(os.getenv("CONSENT_EXPIRY_DAYS", "365"))
        self.consent_grant_scopes = self._parse_csv_values("CONSENT_GRANT_SCOPES", default="view,update_contact")
        self.operator_org_id = self._parse_optional_int("OPERATOR_ORG_ID")

        self.auto_create_schema = os.getenv("AUTO_CREATE_SCHEMA", "false").lower() == "true"
        self.cors_allowed_origins = self._parse_cors_origins()
        self.validate()

    def _parse_csv_values(self, env_name: str, default: str) -> list[str]:
        raw = os.getenv(env_name, default)
        return [item.strip() for item in raw.split(",") if item.strip()]

    def _parse_optional_int(self, env_name: str) -> int | None:
        raw = os.getenv(env_name, "").strip()
        if not raw:
            return None
        try:
            return int(raw)
        except ValueError:
            raise RuntimeError(f"{env_name} must be an integer") from None

    def _parse_cors_origins(self) -> list[str]:
        raw = os.getenv("CORS_ALLOWED_ORIGINS", "")
        if raw.strip():
            return [origin.strip() for origin in raw.split(",") if origin.strip()]
        if self.env == "dev":
            return ["http://localhost:3000", "http://127.0.0.1:3000"]
        return []

    @property
    def excluded_org_ids(self) -> tuple[int, ...]:
        return (self.operator_org_id,) if self.operator_org_id is not None else ()

    def validate(self) -> None:
        if self.consent_expiry_days <= 0:
            raise RuntimeError("CONSENT_EXPIRY_DAYS must be > 0")
        if not self.consent_grant_scopes:
            raise RuntimeError("CONSENT_GRANT_SCOPES must list at least one scope")
        if not self.consent_kind:
            raise RuntimeError("CONSENT_KIND must not be empty")
        if self.db_statement_timeout_ms < 0:
            raise RuntimeError("DB_STATEMENT_TIMEOUT_MS must be >= 0")
        if self.env == "prod":
            if not self.cors_allowed_origins:
                raise RuntimeError("CORS_ALLOWED_ORIGINS must be explicitly set in prod")
            if self.auto_create_schema:
                raise RuntimeError("AUTO_CREATE_SCHEMA must be false in prod")
            if self.log_level == "DEBUG":
                raise RuntimeError("LOG_LEVEL=DEBUG is not allowed in prod")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


def reset_settings_cache() -> None:
    get_settings.cache_clear()
