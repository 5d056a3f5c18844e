"""Pydantic models for emails handed to the learning and drafting core."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class EmailDirection(str, Enum):
    """Whether the user received or sent the email."""

    RECEIVED = "received"
    SENT = "sent"


class EmailMessage(BaseModel):
    """A single email as supplied by the mailbox layer."""

    model_config = ConfigDict(frozen=True)

    id: str
    subject: str = ""
    body: str = ""
    sender: str = ""
    recipients: list[str] = Field(default_factory=list)
    direction: EmailDirection = EmailDirection.RECEIVED
    headers: dict[str, str] = Field(default_factory=dict)
    received_at: datetime | None = None

    @property
    def content_length(self) -> int:
        """Length of the stripped body."""
        return len(self.body.strip())


class EmailPair(BaseModel):
    """A received email plus the sent reply that answered it, if any."""

    model_config = ConfigDict(frozen=True)

    received: EmailMessage
    response: EmailMessage | None = None

    @property
    def has_response(self) -> bool:
        """True when a reply was found for the received email."""
        return self.response is not None

    @property
    def combined_text(self) -> str:
        """Subject and body text of both sides, for language detection."""
        parts = [self.received.subject, self.received.body]
        if self.response is not None:
            parts.extend([self.response.subject, self.response.body])
        return " ".join(parts)
