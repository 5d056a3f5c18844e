"""Rule-based filter deciding whether an email deserves a reply draft.

Skips the user's own sent mail, automated and no-reply senders, mailing
lists, auto-submitted messages, bounces, read receipts, calendar
responses and senders the user excluded from learning.
"""

import logging
import re
from dataclasses import dataclass

from replywise.models.email import EmailDirection, EmailMessage
from replywise.models.learning import LearningConfig

logger = logging.getLogger(__name__)


# Automated / no-reply sender patterns
_NOREPLY_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"^no[-_.]?reply@", re.IGNORECASE),
    re.compile(r"^do[-_.]?not[-_.]?reply@", re.IGNORECASE),
    re.compile(r"^notifications?@", re.IGNORECASE),
    re.compile(r"^mailer[-_.]?daemon@", re.IGNORECASE),
    re.compile(r"^postmaster@", re.IGNORECASE),
    re.compile(r"^bounces?@", re.IGNORECASE),
    re.compile(r"^auto[-_.]?confirm@", re.IGNORECASE),
]

# Mailing-list header indicators
_LIST_HEADERS = {"list-unsubscribe", "list-id", "x-mailchimp-id", "x-campaign-id"}

_BULK_PRECEDENCE = {"bulk", "junk", "list"}

_CALENDAR_SUBJECT_PREFIXES = (
    "accepted:", "declined:", "tentative:", "canceled:", "cancelled:",
    "updated invitation:", "invitation:", "meeting response:",
)

_BOUNCE_INDICATORS = (
    "undeliverable", "delivery failed", "returned mail",
    "failure notice", "delivery status", "mail delivery subsystem",
)

_RECEIPT_PREFIXES = ("read:", "read receipt:", "delivery receipt:")

_REPLY_PREFIX_RE = re.compile(r"^(?:(?:re|fw|fwd|aw|wg|sv|odg)\s*:\s*)+")


@dataclass(frozen=True)
class FilterDecision:
    """Whether to draft a reply and, if not, why."""

    should_process: bool
    reason: str | None = None


_PROCESS = FilterDecision(should_process=True)


def _sender_address(sender: str) -> str:
    """Bare address from ``Name <addr>`` or ``addr``."""
    match = re.search(r"<([^>]+)>", sender)
    return (match.group(1) if match else sender).strip().lower()


class EmailFilter:
    """Skips emails that should never receive an automatic draft."""

    def should_process(
        self,
        email: EmailMessage,
        config: LearningConfig | None = None,
    ) -> FilterDecision:
        """Decide whether a draft should be generated for ``email``.

        Args:
            email: Incoming email.
            config: User learning configuration (excluded senders/domains).

        Returns:
            FilterDecision; ``reason`` names the first rule that matched.
        """
        decision = self._evaluate(email, config)
        if not decision.should_process:
            logger.info(
                "SKIP_%s: %s sender=%s",
                (decision.reason or "unknown").upper(),
                email.id,
                email.sender,
            )
        return decision

    def _evaluate(self, email: EmailMessage, config: LearningConfig | None) -> FilterDecision:
        if email.direction == EmailDirection.SENT:
            return FilterDecision(False, "sent_by_user")

        sender = _sender_address(email.sender)
        subject = email.subject.lower().strip()
        headers = {name.lower(): (value or "").lower().strip() for name, value in email.headers.items()}

        if config is not None:
            excluded = {s.strip().lower() for s in config.excluded_senders}
            domains = {d.strip().lower().lstrip("@") for d in config.excluded_domains}
            if sender in excluded or sender.rsplit("@", 1)[-1] in domains:
                return FilterDecision(False, "excluded_sender")

        if any(p.match(sender) for p in _NOREPLY_PATTERNS):
            return FilterDecision(False, "noreply_sender")

        if any(b in subject for b in _BOUNCE_INDICATORS):
            return FilterDecision(False, "bounce")

        if _LIST_HEADERS.intersection(headers) or headers.get("precedence") in _BULK_PRECEDENCE:
            return FilterDecision(False, "mailing_list")

        auto_submitted = headers.get("auto-submitted")
        if (auto_submitted and auto_submitted != "no") or "x-auto-response-suppress" in headers:
            return FilterDecision(False, "auto_generated")

        if _REPLY_PREFIX_RE.sub("", subject).startswith(_RECEIPT_PREFIXES):
            return FilterDecision(False, "read_receipt")

        if subject.startswith(_CALENDAR_SUBJECT_PREFIXES) or "BEGIN:VCALENDAR" in email.body:
            return FilterDecision(False, "calendar_response")

        return _PROCESS
