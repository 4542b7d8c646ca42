from typing import Literal, Optional

from pydantic import ConfigDict, model_validator
from pydantic_settings import BaseSettings
from typing_extensions import Self


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Collaborator implementations (messaging, inference, intake) are
    picked here, once, by explicit provider settings.  Missing
    credentials for a selected provider make ``Settings()`` raise, so
    the service refuses to start instead of running half-configured.
    """

    model_config = ConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

    DATABASE_URL: str
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Redis: webhook de-duplication fast path
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_WEBHOOK_DEDUP_TTL: int = 86400  # 24 hours

    CORS_ORIGINS: str = "http://localhost:3000"

    # Underwriting thresholds
    MIN_BMV_PERCENTAGE: float = 15.0
    MAX_ASKING_PRICE: float = 500_000
    MIN_PROFIT_POTENTIAL: float = 30_000

    # Offer pricing
    OFFER_BASE_PERCENTAGE: float = 80.0  # of market value
    OFFER_MAX_PERCENTAGE: float = 85.0  # of asking price
    OFFER_MIN_PROFIT: float = 30_000
    OFFER_ROUNDING_INCREMENT: int = 1000
    RETRY_FLEX_PERCENTAGE: float = 2.0

    # Retry escalation
    RETRY_1_DELAY_DAYS: int = 2
    RETRY_2_DELAY_DAYS: int = 4
    RETRY_3_DELAY_DAYS: int = 7
    MAX_RETRIES: int = 3
    FINAL_OFFER_DEADLINE_DAYS: int = 3
    VIDEO_OBJECTION_URL: str = ""
    DEFAULT_COMPLETION_DAYS: int = 14

    # Conversation
    CONVERSATION_TIMEOUT_HOURS: int = 48
    CONVERSATION_HISTORY_LIMIT: int = 10
    CONVERSATION_MAX_EXCHANGES: int = 16
    REPLY_GRACE_SECONDS: int = 120

    # Scheduler
    PIPELINE_ENABLED: bool = True
    PIPELINE_POLL_INTERVAL: int = 60  # seconds
    INTAKE_LOOKBACK_HOURS: int = 24
    EXTERNAL_CALL_TIMEOUT_SECONDS: float = 15.0
    CONCURRENCY_RETRY_ATTEMPTS: int = 3

    # Messaging gateway
    MESSAGING_PROVIDER: Literal["twilio", "console"] = "twilio"
    TWILIO_ACCOUNT_SID: str = ""
    TWILIO_AUTH_TOKEN: str = ""
    TWILIO_PHONE_NUMBER: str = ""
    TWILIO_API_BASE_URL: str = "https://api.twilio.com/2010-04-01"
    WEBHOOK_PUBLIC_URL: str = ""

    # Inference provider
    INFERENCE_PROVIDER: Literal["anthropic", "openai"] = "anthropic"
    ANTHROPIC_API_KEY: str = ""
    ANTHROPIC_MODEL: str = "claude-3-5-haiku-20241022"
    OPENAI_API_KEY: str = ""
    OPENAI_MODEL: str = "gpt-4o-mini"
    INFERENCE_MAX_TOKENS: int = 300

    # Market valuation lookup
    PROPERTYDATA_API_KEY: str
    PROPERTYDATA_API_URL: str = "https://api.propertydata.co.uk"

    # Lead intake
    INTAKE_PROVIDER: Literal["facebook", "none"] = "facebook"
    FACEBOOK_ACCESS_TOKEN: str = ""
    FACEBOOK_LEAD_FORM_ID: str = ""
    FACEBOOK_GRAPH_URL: str = "https://graph.facebook.com/v18.0"

    @model_validator(mode="after")
    def validate_providers_and_thresholds(self) -> Self:
        """Refuse to build settings that would leave behaviour undefined."""
        missing = []
        if self.MESSAGING_PROVIDER == "twilio":
            for key in ("TWILIO_ACCOUNT_SID", "TWILIO_AUTH_TOKEN", "TWILIO_PHONE_NUMBER"):
                if not getattr(self, key):
                    missing.append(key)
        if self.INFERENCE_PROVIDER == "anthropic" and not self.ANTHROPIC_API_KEY:
            missing.append("ANTHROPIC_API_KEY")
        if self.INFERENCE_PROVIDER == "openai" and not self.OPENAI_API_KEY:
            missing.append("OPENAI_API_KEY")
        if self.INTAKE_PROVIDER == "facebook":
            for key in ("FACEBOOK_ACCESS_TOKEN", "FACEBOOK_LEAD_FORM_ID"):
                if not getattr(self, key):
                    missing.append(key)
        if not self.PROPERTYDATA_API_KEY:
            missing.append("PROPERTYDATA_API_KEY")
        if missing:
            raise ValueError(
                "Missing required configuration: " + ", ".join(missing)
            )

        if not 0 < self.OFFER_BASE_PERCENTAGE <= 100:
            raise ValueError("OFFER_BASE_PERCENTAGE must be in (0, 100]")
        if not 0 < self.OFFER_MAX_PERCENTAGE <= 100:
            raise ValueError("OFFER_MAX_PERCENTAGE must be in (0, 100]")
        if not 1 <= self.MAX_RETRIES <= 3:
            raise ValueError("MAX_RETRIES must be between 1 and 3")
        if self.OFFER_ROUNDING_INCREMENT <= 0:
            raise ValueError("OFFER_ROUNDING_INCREMENT must be positive")
        if self.CONVERSATION_HISTORY_LIMIT < 1:
            raise ValueError("CONVERSATION_HISTORY_LIMIT must be at least 1")
        return self

    def retry_delay_days(self, retry_number: int) -> int:
        """Delay before retry *retry_number* (1-3) is due."""
        delays = {
            1: self.RETRY_1_DELAY_DAYS,
            2: self.RETRY_2_DELAY_DAYS,
            3: self.RETRY_3_DELAY_DAYS,
        }
        return delays[retry_number]

    @property
    def sender_number(self) -> Optional[str]:
        return self.TWILIO_PHONE_NUMBER or None


settings = Settings()
