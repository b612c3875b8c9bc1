from __future__ import annotations

import os
from dataclasses import dataclass


def _flag(name: str, default: str) -> bool:
    return os.environ.get(name, default) not in ("0", "false", "False")


@dataclass(frozen=True)
class Settings:
    # AWS
    aws_region: str = os.environ.get("AWS_REGION", "us-east-1")

    # Cognito (optional wiring; auth is pluggable)
    cognito_user_pool_id: str = os.environ.get("COGNITO_USER_POOL_ID", "")
    cognito_region: str = os.environ.get("COGNITO_REGION", "")
    cognito_app_client_id: str = os.environ.get("COGNITO_APP_CLIENT_ID", "")
    cognito_expected_token_use: str = os.environ.get("COGNITO_EXPECTED_TOKEN_USE", "access")

    # DynamoDB
    subscriptions_table_name: str = os.environ.get("SUBSCRIPTIONS_TABLE_NAME", "subscriptions")
    subscriptions_customer_index: str = os.environ.get("SUBSCRIPTIONS_CUSTOMER_INDEX", "billing_customer_id-index")
    record_update_max_attempts: int = int(os.environ.get("RECORD_UPDATE_MAX_ATTEMPTS", "3"))

    # Square
    square_environment: str = os.environ.get("SQUARE_ENVIRONMENT", "sandbox")
    square_access_token: str = os.environ.get("SQUARE_ACCESS_TOKEN", "")
    square_application_id: str = os.environ.get("SQUARE_APPLICATION_ID", "")
    square_api_version: str = os.environ.get("SQUARE_API_VERSION", "2025-04-16")
    square_location_id: str = os.environ.get("SQUARE_LOCATION_ID", "")
    square_timeout_seconds: int = int(os.environ.get("SQUARE_TIMEOUT_SECONDS", "20"))

    # Square webhooks
    square_webhook_signature_key: str = os.environ.get("SQUARE_WEBHOOK_SIGNATURE_KEY", "")
    square_webhook_url: str = os.environ.get("SQUARE_WEBHOOK_URL", "")
    webhook_dedupe_ttl_seconds: int = int(os.environ.get("WEBHOOK_DEDUPE_TTL_SECONDS", str(7 * 24 * 3600)))

    # Entitlements
    grace_period_days: int = int(os.environ.get("GRACE_PERIOD_DAYS", "7"))

    # HTTP
    cors_allow_origins: str = os.environ.get("CORS_ALLOW_ORIGINS", "*")
    metrics_enabled: bool = _flag("METRICS_ENABLED", "1")
    log_level: str = os.environ.get("LOG_LEVEL", "INFO")

    @property
    def square_base_url(self) -> str:
        if self.square_environment == "production":
            return "https://connect.squareup.com"
        return "https://connect.squareupsandbox.com"


S = Settings()
