"""
Service initialization and dependency injection.

Creates and wires every component the API and the background sweeps use.
Collaborators (LLM provider, channel, calendar, forwarder) can be passed in
to replace the configured ones.
"""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.settings import get_settings, Settings
from api.analytics.collector import AnalyticsAggregator
from api.channels.base import MessagingChannel
from api.channels.whatsapp import MetaCloudWhatsApp
from lead_scoring.lead_router import LeadForwarder
from lead_scoring.scoring_model import LeadScorer
from llm.oracle import DecisionOracle
from llm.orchestrator import ConversationOrchestrator
from llm.prompt_templates import PromptTemplates
from llm.providers import BedrockProvider, LLMProvider, OpenAIProvider
from scheduling.booking import BookingCoordinator
from scheduling.calendar_client import CalendarClient, CalendarError, GoogleCalendarClient
from scheduling.cleanup import IdleCleanup
from scheduling.reminders import ReminderScheduler
from scheduling.slot_allocator import SlotAllocator

logger = logging.getLogger(__name__)

_UNSET = object()


class Services:
    """Container for all application services."""

    def __init__(self):
        self.settings: Optional[Settings] = None
        self.session_factory: Optional[async_sessionmaker[AsyncSession]] = None
        self.llm_provider: Optional[LLMProvider] = None
        self.oracle: Optional[DecisionOracle] = None
        self.channel: Optional[MessagingChannel] = None
        self.calendar: Optional[CalendarClient] = None
        self.allocator: Optional[SlotAllocator] = None
        self.booking: Optional[BookingCoordinator] = None
        self.lead_scorer: Optional[LeadScorer] = None
        self.forwarder: Optional[LeadForwarder] = None
        self.aggregator: Optional[AnalyticsAggregator] = None
        self.orchestrator: Optional[ConversationOrchestrator] = None
        self.reminders: Optional[ReminderScheduler] = None
        self.cleanup: Optional[IdleCleanup] = None
        self._initialized = False

    def initialize(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Optional[Settings] = None,
        llm_provider=_UNSET,
        channel: Optional[MessagingChannel] = None,
        calendar=_UNSET,
        forwarder: Optional[LeadForwarder] = None,
    ):
        """Initialize all services."""
        self.settings = settings or get_settings()
        self.session_factory = session_factory
        s = self.settings
        logger.info(f"Initializing services with provider: {s.llm_provider}")

        self.llm_provider = self._init_provider() if llm_provider is _UNSET else llm_provider
        self.oracle = DecisionOracle(
            self.llm_provider,
            templates=PromptTemplates(brand_name=s.brand_name),
            timeout_seconds=s.llm_timeout_seconds,
        )

        self.channel = channel or MetaCloudWhatsApp(
            api_token=s.whatsapp_token or "",
            phone_number_id=s.whatsapp_phone_number_id or "",
            verify_token=s.whatsapp_verify_token,
            api_version=s.whatsapp_api_version,
            timeout=s.http_timeout_seconds,
        )
        if not s.whatsapp_configured and channel is None:
            logger.warning("WhatsApp credentials not set, replies will fail to send")

        self.calendar = self._init_calendar() if calendar is _UNSET else calendar
        self.allocator = SlotAllocator(
            self.calendar,
            timezone=s.timezone,
            business_start=s.business_start_time,
            business_end=s.business_end_time,
            duration_minutes=s.slot_duration_minutes,
            buffer_minutes=s.slot_buffer_minutes,
            days_ahead=s.slot_days_ahead,
            working_days=s.working_days_list,
            max_slots=s.max_offered_slots,
        )

        self.lead_scorer = LeadScorer(
            hot_threshold=s.lead_score_threshold_hot,
            warm_threshold=s.lead_score_threshold_warm,
        )
        self.booking = BookingCoordinator(
            session_factory,
            self.allocator,
            self.calendar,
            self.lead_scorer,
            meeting_title=s.meeting_title,
            claim_ttl_minutes=s.booking_claim_ttl_minutes,
        )
        self.forwarder = forwarder or LeadForwarder(
            webhook_url=s.automation_webhook_url,
            api_key=s.automation_api_key,
            scorer=self.lead_scorer,
            timeout=s.http_timeout_seconds,
        )
        self.aggregator = AnalyticsAggregator(session_factory, timezone_name=s.timezone)

        self.orchestrator = ConversationOrchestrator(
            session_factory,
            oracle=self.oracle,
            channel=self.channel,
            allocator=self.allocator,
            booking=self.booking,
            forwarder=self.forwarder,
            scorer=self.lead_scorer,
            aggregator=self.aggregator,
        )
        self.reminders = ReminderScheduler(
            session_factory,
            self.channel,
            timezone_name=s.timezone,
            hour_window_minutes=s.reminder_hour_window_minutes,
        )
        self.cleanup = IdleCleanup(session_factory, cutoff_hours=s.idle_cutoff_hours)

        self._initialized = True
        logger.info("All services initialized")

    def _init_provider(self) -> Optional[LLMProvider]:
        """Build the configured LLM provider, or None (oracle falls back)."""
        s = self.settings
        try:
            if s.is_openai:
                if not s.openai_api_key:
                    logger.warning("OPENAI_API_KEY not set, oracle disabled")
                    return None
                return OpenAIProvider(
                    api_key=s.openai_api_key,
                    model_id=s.llm_model_id,
                    max_tokens=s.max_tokens,
                    temperature=s.temperature,
                    timeout=s.llm_timeout_seconds,
                )
            if s.is_bedrock:
                return BedrockProvider(
                    model_id=s.llm_model_id,
                    region=s.aws_region,
                    max_tokens=s.max_tokens,
                    temperature=s.temperature,
                    timeout=s.llm_timeout_seconds,
                )
        except Exception as e:
            logger.error(f"LLM provider initialization failed, oracle disabled: {e}")
            return None
        logger.warning(f"Unknown LLM_PROVIDER {s.llm_provider!r}, oracle disabled")
        return None

    def _init_calendar(self) -> Optional[CalendarClient]:
        s = self.settings
        if not s.calendar_configured:
            logger.warning("Google Calendar credentials not set, scheduling disabled")
            return None
        try:
            return GoogleCalendarClient(
                calendar_id=s.google_calendar_id,
                credentials_file=s.google_credentials_file,
                credentials_json=s.google_credentials_json,
                timezone=s.timezone,
            )
        except CalendarError as e:
            logger.error(f"Calendar initialization failed: {e}")
            return None

    @property
    def is_ready(self) -> bool:
        return self._initialized and self.orchestrator is not None

    def health(self) -> dict:
        """Return readiness of each collaborator."""
        return {
            "initialized": self._initialized,
            "database": self.session_factory is not None,
            "oracle": bool(self.oracle and self.oracle.configured),
            "whatsapp": bool(self.settings and self.settings.whatsapp_configured),
            "calendar": self.calendar is not None,
            "automation": bool(self.forwarder and self.forwarder.configured),
        }

    def reset(self):
        """Drop all service instances (used on shutdown and in tests)."""
        self.__init__()


# Singleton
_services = Services()


def get_services() -> Services:
    """Get the global services instance."""
    return _services


def initialize_services(session_factory: async_sessionmaker[AsyncSession], **overrides):
    """Initialize all services (called at startup)."""
    _services.initialize(session_factory, **overrides)
