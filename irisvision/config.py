from __future__ import annotations

from pydantic import ConfigDict, Field
from pydantic_settings import BaseSettings

DEFAULT_ANALYSIS_URL = "https://toolkit.rork.com/text/llm/"
MIB = 1024 * 1024


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    app_env: str = Field("development", alias="APP_ENV")
    client_platform: str = Field("ios", alias="CLIENT_PLATFORM")

    api_key: str = "test-api-key"
    jwt_secret: str = Field("test-jwt-secret-please-rotate-0001", alias="JWT_SECRET")
    trusted_proxies: list[str] = Field(
        default_factory=lambda: ["127.0.0.1", "testclient"]
    )

    # Entitlements
    weekly_limit: int = Field(3, alias="WEEKLY_LIMIT")
    reset_period_days: int = Field(7, alias="RESET_PERIOD_DAYS")

    # History
    local_history_limit: int = Field(50, alias="LOCAL_HISTORY_LIMIT")
    remote_history_limit: int = Field(50, alias="REMOTE_HISTORY_LIMIT")

    # Image packaging; limits apply to the base64 wire size
    image_max_edge: int = Field(800, alias="IMAGE_MAX_EDGE")
    image_soft_limit_bytes: int = Field(2 * MIB, alias="IMAGE_SOFT_LIMIT_BYTES")
    image_hard_limit_bytes: int = Field(3 * MIB, alias="IMAGE_HARD_LIMIT_BYTES")
    image_quality: int = Field(85, alias="IMAGE_QUALITY")
    image_second_pass_quality: int = Field(60, alias="IMAGE_SECOND_PASS_QUALITY")
    max_upload_bytes: int = Field(20 * MIB, alias="MAX_UPLOAD_BYTES")

    # Remote analysis
    analysis_provider: str = Field("toolkit", alias="ANALYSIS_PROVIDER")
    analysis_api_url: str = Field(DEFAULT_ANALYSIS_URL, alias="ANALYSIS_API_URL")
    analysis_timeout_s: float | None = Field(None, alias="ANALYSIS_TIMEOUT_S")
    analysis_max_response_bytes: int = Field(
        256 * 1024, alias="ANALYSIS_MAX_RESPONSE_BYTES"
    )
    openai_model: str = Field("gpt-4.1-mini", alias="OPENAI_MODEL")

    # Billing verifier
    billing_verify_url: str | None = Field(None, alias="BILLING_VERIFY_URL")
    billing_api_token: str | None = Field(None, alias="BILLING_API_TOKEN")
    billing_timeout_s: float = Field(15.0, alias="BILLING_TIMEOUT_S")

    database_url: str = Field(
        "sqlite:////tmp/irisvision_remote.db", alias="DATABASE_URL"
    )
    local_state_url: str = Field(
        "sqlite:////tmp/irisvision_device.db", alias="LOCAL_STATE_URL"
    )
    db_create_all: bool = Field(False, alias="DB_CREATE_ALL")

    redis_url: str = Field("redis://localhost:6379", alias="REDIS_URL")

    s3_bucket: str = "irisvision"
    s3_endpoint: str | None = None
    s3_region: str = "us-east-1"
    s3_access_key: str | None = None
    s3_secret_key: str | None = None
    s3_public_url: str | None = None

    model_config = ConfigDict(
        extra="ignore",
        env_file=".env",
        case_sensitive=False,
        populate_by_name=True,
    )

    @property
    def effective_analysis_timeout(self) -> float:
        """Android clients get a longer window than the other platforms."""
        if self.analysis_timeout_s:
            return self.analysis_timeout_s
        return 30.0 if self.client_platform.lower() == "android" else 15.0
