"""
Centralized configuration for the lead-qualification agent.

All settings are loaded from environment variables via .env file.
"""

from datetime import time
from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

load_dotenv()


def _parse_hhmm(value: str) -> time:
    hours, minutes = value.strip().split(":", 1)
    return time(int(hours), int(minutes))


class Settings(BaseSettings):
    """Application settings."""

    # Brand
    brand_name: str = Field(default="LeadFlow")
    meeting_title: str = Field(default="Reunião de apresentação")

    # WhatsApp (Meta Cloud API)
    whatsapp_token: Optional[str] = Field(default=None)
    whatsapp_phone_number_id: Optional[str] = Field(default=None)
    whatsapp_verify_token: str = Field(default="change-me")
    whatsapp_api_version: str = Field(default="v18.0")

    # LLM provider selection
    llm_provider: str = Field(default="openai")  # openai | bedrock
    openai_api_key: Optional[str] = Field(default=None)
    openai_llm_model: str = Field(default="gpt-4o-mini")
    aws_region: str = Field(default="us-east-1")
    bedrock_llm_model_id: str = Field(
        default="us.anthropic.claude-sonnet-4-20250514-v1:0"
    )
    max_tokens: int = Field(default=600)
    temperature: float = Field(default=0.2)
    llm_timeout_seconds: float = Field(default=20.0)

    # Google Calendar
    google_calendar_id: str = Field(default="primary")
    google_credentials_file: Optional[str] = Field(default=None)
    google_credentials_json: Optional[str] = Field(default=None)

    # Scheduling
    timezone: str = Field(default="America/Sao_Paulo")
    business_hours_start: str = Field(default="09:00")
    business_hours_end: str = Field(default="18:00")
    slot_duration_minutes: int = Field(default=30)
    slot_buffer_minutes: int = Field(default=15)
    slot_days_ahead: int = Field(default=7)
    max_offered_slots: int = Field(default=6)
    working_days: str = Field(default="0,1,2,3,4")  # Monday=0
    booking_claim_ttl_minutes: int = Field(default=5)

    # Reminders / sweeps
    enable_background_sweeps: bool = Field(default=True)
    reminder_daily_interval_minutes: int = Field(default=60)
    reminder_sweep_interval_minutes: int = Field(default=5)
    reminder_hour_window_minutes: int = Field(default=10)
    cleanup_interval_minutes: int = Field(default=30)
    idle_cutoff_hours: int = Field(default=24)
    analytics_interval_minutes: int = Field(default=15)

    # Lead scoring
    lead_score_threshold_hot: int = Field(default=70)
    lead_score_threshold_warm: int = Field(default=40)

    # Automation forward
    automation_webhook_url: Optional[str] = Field(default=None)
    automation_api_key: Optional[str] = Field(default=None)
    http_timeout_seconds: float = Field(default=10.0)

    # Database
    database_url: str = Field(default="sqlite+aiosqlite:///./leadflow.db")

    # API
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8000)
    api_title: str = Field(default="LeadFlow WhatsApp Agent API")
    api_version: str = Field(default="1.0.0")
    admin_api_key: Optional[str] = Field(default=None)
    cors_origins: str = Field(default="*")

    # Logging
    log_level: str = Field(default="INFO")
    debug: bool = Field(default=False)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def is_bedrock(self) -> bool:
        return self.llm_provider.lower() == "bedrock"

    @property
    def is_openai(self) -> bool:
        return self.llm_provider.lower() == "openai"

    @property
    def llm_model_id(self) -> str:
        if self.is_bedrock:
            return self.bedrock_llm_model_id
        return self.openai_llm_model

    @property
    def business_start_time(self) -> time:
        return _parse_hhmm(self.business_hours_start)

    @property
    def business_end_time(self) -> time:
        return _parse_hhmm(self.business_hours_end)

    @property
    def working_days_list(self) -> List[int]:
        return [int(d) for d in self.working_days.split(",") if d.strip()]

    @property
    def cors_origins_list(self) -> List[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def calendar_configured(self) -> bool:
        return bool(self.google_credentials_file or self.google_credentials_json)

    @property
    def whatsapp_configured(self) -> bool:
        return bool(self.whatsapp_token and self.whatsapp_phone_number_id)


@lru_cache()
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
