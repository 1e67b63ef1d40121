"""
Abstract messaging channel.

Base class for the transport the agent talks to contacts through.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class InboundMessage:
    """A text message received from a contact."""
    contact_key: str  # Phone number (wa_id)
    text: str
    message_id: Optional[str] = None
    display_name: Optional[str] = None


@dataclass
class ChannelResponse:
    """Response from channel send operation."""
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class MessagingChannel(ABC):
    """Abstract base class for messaging channels."""

    @abstractmethod
    def verify_channel(self, mode: Optional[str], token: Optional[str], challenge: Optional[str]) -> Optional[str]:
        """Return the challenge when the subscription handshake is valid, else None."""
        ...

    @abstractmethod
    def parse_inbound(self, payload: Dict[str, Any]) -> List[InboundMessage]:
        """Extract text messages from a webhook payload."""
        ...

    @abstractmethod
    async def send_text(self, contact_key: str, text: str) -> ChannelResponse:
        """Send a text message."""
        ...

    async def health_check(self) -> bool:
        return True
