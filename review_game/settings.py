from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=None, extra="ignore")

    # Runtime
    environment: str = Field(default="development", validation_alias="NODE_ENV")
    port: int = Field(default=8080, validation_alias="PORT")
    service_name: str = Field(default="review-game-backend", validation_alias="SERVICE_NAME")

    # CORS / Frontend
    frontend_base_url: str = Field(
        default="https://reviewgame.app", validation_alias="FRONTEND_BASE_URL"
    )
    frontend_url: str | None = Field(default=None, validation_alias="FRONTEND_URL")
    frontend_urls: str | None = Field(default=None, validation_alias="FRONTEND_URLS")

    # AWS / data
    aws_region: str = Field(default="us-east-1", validation_alias="AWS_REGION")
    ddb_table_name: str | None = Field(default=None, validation_alias="DDB_TABLE_NAME")
    # DynamoDB Local (e.g. http://localhost:8000) for development; unset in AWS.
    ddb_endpoint_url: str | None = Field(default=None, validation_alias="DDB_ENDPOINT_URL")
    # Encrypts pagination cursors handed to clients.
    token_enc_key: str | None = Field(default=None, validation_alias="TOKEN_ENC_KEY")

    # Auth (Cognito)
    cognito_user_pool_id: str | None = Field(
        default=None, validation_alias="COGNITO_USER_POOL_ID"
    )
    cognito_client_id: str | None = Field(
        default=None, validation_alias="COGNITO_CLIENT_ID"
    )
    cognito_region: str = Field(default="us-east-1", validation_alias="COGNITO_REGION")

    # Admin hardening
    admin_rate_limit_requests: int = Field(
        default=20, validation_alias="ADMIN_RATE_LIMIT_REQUESTS"
    )
    admin_rate_limit_window_seconds: int = Field(
        default=900, validation_alias="ADMIN_RATE_LIMIT_WINDOW_SECONDS"
    )

    # Scheduled jobs
    cron_secret: str | None = Field(default=None, validation_alias="CRON_SECRET")

    # Billing (Stripe)
    stripe_secret_key: str | None = Field(default=None, validation_alias="STRIPE_SECRET_KEY")
    stripe_webhook_secret: str | None = Field(
        default=None, validation_alias="STRIPE_WEBHOOK_SECRET"
    )
    stripe_api_timeout_seconds: int = Field(
        default=10, validation_alias="STRIPE_API_TIMEOUT_SECONDS"
    )
    stripe_basic_monthly_price_id: str | None = Field(
        default=None, validation_alias="STRIPE_BASIC_MONTHLY_PRICE_ID"
    )
    stripe_basic_annual_price_id: str | None = Field(
        default=None, validation_alias="STRIPE_BASIC_ANNUAL_PRICE_ID"
    )
    stripe_premium_monthly_price_id: str | None = Field(
        default=None, validation_alias="STRIPE_PREMIUM_MONTHLY_PRICE_ID"
    )
    stripe_premium_annual_price_id: str | None = Field(
        default=None, validation_alias="STRIPE_PREMIUM_ANNUAL_PRICE_ID"
    )
    # Product that admin-assigned custom prices attach to; one is created per price when unset.
    stripe_custom_plan_product_id: str | None = Field(
        default=None, validation_alias="STRIPE_CUSTOM_PLAN_PRODUCT_ID"
    )

    # Observability (OpenTelemetry)
    otel_enabled: bool = Field(default=False, validation_alias="OTEL_ENABLED")
    otel_service_name: str | None = Field(
        default="review-game-backend", validation_alias="OTEL_SERVICE_NAME"
    )
    # OTLP/HTTP endpoint (e.g. http://adot-collector:4318/v1/traces)
    otel_exporter_otlp_endpoint: str | None = Field(
        default=None, validation_alias="OTEL_EXPORTER_OTLP_ENDPOINT"
    )

    # ---- helpers / derived flags ----
    @property
    def normalized_environment(self) -> str:
        v = (self.environment or "").strip().lower()
        if v in ("prod", "production"):
            return "production"
        if v in ("stage", "staging"):
            return "staging"
        if v in ("dev", "development"):
            return "development"
        return v or "development"

    @property
    def is_production(self) -> bool:
        return self.normalized_environment == "production"

    @property
    def is_development(self) -> bool:
        return self.normalized_environment == "development"

    def configured_price_ids(self) -> dict[str, str]:
        """Configured Stripe price ids keyed by ``{TIER}_{CYCLE}``."""
        raw = {
            "BASIC_MONTHLY": self.stripe_basic_monthly_price_id,
            "BASIC_ANNUAL": self.stripe_basic_annual_price_id,
            "PREMIUM_MONTHLY": self.stripe_premium_monthly_price_id,
            "PREMIUM_ANNUAL": self.stripe_premium_annual_price_id,
        }
        return {k: str(v).strip() for k, v in raw.items() if v and str(v).strip()}

    def require_in_production(self) -> None:
        """
        Enforce required settings in production.

        Development/staging are allowed to run with partial config for local work,
        but production must be fully configured.
        """
        if not self.is_production:
            return

        missing: list[str] = []

        if not self.cognito_user_pool_id:
            missing.append("COGNITO_USER_POOL_ID")
        if not self.cognito_client_id:
            missing.append("COGNITO_CLIENT_ID")

        if not self.ddb_table_name:
            missing.append("DDB_TABLE_NAME")

        # Cursor encryption must never fall back to a default key in prod.
        if not self.token_enc_key:
            missing.append("TOKEN_ENC_KEY")

        if not self.stripe_secret_key:
            missing.append("STRIPE_SECRET_KEY")
        if not self.stripe_webhook_secret:
            missing.append("STRIPE_WEBHOOK_SECRET")

        if not self.cron_secret:
            missing.append("CRON_SECRET")

        if missing:
            raise RuntimeError(
                "Missing required production environment variables: "
                + ", ".join(missing)
            )

    def to_log_safe_dict(self) -> dict[str, object]:
        """
        A redacted representation safe for structured logs / diagnostics.
        """
        def _has(v: object) -> bool:
            return v is not None and str(v).strip() != ""

        return {
            "environment": self.normalized_environment,
            "port": self.port,
            "frontend": {
                "frontend_base_url": self.frontend_base_url,
                "frontend_url": self.frontend_url,
                "frontend_urls": self.frontend_urls,
            },
            "aws": {
                "aws_region": self.aws_region,
                "ddb_table_name": self.ddb_table_name,
                "ddb_endpoint_url": self.ddb_endpoint_url,
                "token_enc_key_configured": _has(self.token_enc_key),
            },
            "auth": {
                "cognito_user_pool_id": self.cognito_user_pool_id,
                "cognito_client_id": self.cognito_client_id,
                "cognito_region": self.cognito_region,
            },
            "admin": {
                "admin_rate_limit_requests": self.admin_rate_limit_requests,
                "admin_rate_limit_window_seconds": self.admin_rate_limit_window_seconds,
                "cron_secret_configured": _has(self.cron_secret),
            },
            "billing": {
                "stripe_secret_key_configured": _has(self.stripe_secret_key),
                "stripe_webhook_secret_configured": _has(self.stripe_webhook_secret),
                "stripe_api_timeout_seconds": self.stripe_api_timeout_seconds,
                "configured_plans": sorted(self.configured_price_ids().keys()),
            },
            "otel": {
                "otel_enabled": bool(self.otel_enabled),
                "otel_service_name": self.otel_service_name,
            },
        }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    s = Settings()
    s.require_in_production()
    return s


# Backwards-compatible module-level singleton.
settings = get_settings()
