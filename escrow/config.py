import logging
import os
from datetime import timedelta
from typing import Optional

from pydantic import BaseModel, Field

TAZAPAY_SANDBOX_URL = "https://service-sandbox.tazapay.com"


class Settings(BaseModel):
    gateway_base_url: str = TAZAPAY_SANDBOX_URL
    gateway_api_key: Optional[str] = None
    gateway_api_secret: Optional[str] = None
    webhook_secret: str = "whsec_local_development"
    gateway_timeout: float = Field(default=10.0, gt=0)
    onboarding_link_ttl_hours: int = Field(default=168, gt=0)
    reconcile_base_delay: int = Field(default=30, gt=0)
    reconcile_max_delay: int = Field(default=3600, gt=0)
    reconcile_max_attempts: int = Field(default=12, gt=0)
    reconcile_interval: float = Field(default=5.0, gt=0)
    reconcile_in_background: bool = True
    webhook_tolerance: int = Field(default=300, ge=0)
    default_currency: str = "USD"
    platform_fee_bps: int = Field(default=500, ge=0)
    processing_fee_bps: int = Field(default=290, ge=0)
    log_level: str = "INFO"

    @property
    def onboarding_link_ttl(self) -> timedelta:
        return timedelta(hours=self.onboarding_link_ttl_hours)

    @property
    def has_gateway_credentials(self) -> bool:
        return bool(self.gateway_api_key and self.gateway_api_secret)

    @classmethod
    def from_env(cls) -> "Settings":
        env = {
            "gateway_base_url": os.getenv("ESCROW_GATEWAY_BASE_URL"),
            "gateway_api_key": os.getenv("ESCROW_GATEWAY_API_KEY"),
            "gateway_api_secret": os.getenv("ESCROW_GATEWAY_API_SECRET"),
            "webhook_secret": os.getenv("ESCROW_WEBHOOK_SECRET"),
            "gateway_timeout": os.getenv("ESCROW_GATEWAY_TIMEOUT"),
            "onboarding_link_ttl_hours": os.getenv("ESCROW_ONBOARDING_LINK_TTL_HOURS"),
            "reconcile_base_delay": os.getenv("ESCROW_RECONCILE_BASE_DELAY"),
            "reconcile_max_delay": os.getenv("ESCROW_RECONCILE_MAX_DELAY"),
            "reconcile_max_attempts": os.getenv("ESCROW_RECONCILE_MAX_ATTEMPTS"),
            "reconcile_interval": os.getenv("ESCROW_RECONCILE_INTERVAL"),
            "reconcile_in_background": os.getenv("ESCROW_RECONCILE_IN_BACKGROUND"),
            "webhook_tolerance": os.getenv("ESCROW_WEBHOOK_TOLERANCE"),
            "default_currency": os.getenv("ESCROW_DEFAULT_CURRENCY"),
            "platform_fee_bps": os.getenv("ESCROW_PLATFORM_FEE_BPS"),
            "processing_fee_bps": os.getenv("ESCROW_PROCESSING_FEE_BPS"),
            "log_level": os.getenv("ESCROW_LOG_LEVEL"),
        }
        return cls(**{k: v for k, v in env.items() if v is not None})


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
