"""Tests for the automated-email filter."""

import pytest

from replywise.models.email import EmailDirection
from replywise.models.learning import LearningConfig
from replywise.services.email_filter import EmailFilter
from tests.conftest import make_email


@pytest.fixture
def email_filter():
    return EmailFilter()


class TestEmailFilter:
    """Tests for EmailFilter.should_process."""

    def test_regular_email_processed(self, email_filter):
        """A normal customer email gets a draft."""
        decision = email_filter.should_process(make_email())
        assert decision.should_process
        assert decision.reason is None

    def test_sent_mail_skipped(self, email_filter):
        """The user's own sent mail never gets a draft."""
        decision = email_filter.should_process(make_email(direction=EmailDirection.SENT))
        assert decision.reason == "sent_by_user"

    @pytest.mark.parametrize(
        "sender",
        [
            "noreply@shop.example",
            "no-reply@shop.example",
            "Shop <do_not_reply@shop.example>",
            "notifications@github.example",
            "MAILER-DAEMON@mx.example",
        ],
    )
    def test_automated_senders(self, email_filter, sender):
        """No-reply style senders are skipped."""
        assert email_filter.should_process(make_email(sender=sender)).reason == "noreply_sender"

    def test_excluded_sender_and_domain(self, email_filter):
        """Senders and domains excluded in the user's config are skipped."""
        config = LearningConfig(excluded_senders=["Boss@Corp.example"], excluded_domains=["@spam.example"])

        assert email_filter.should_process(make_email(sender="boss@corp.example"), config).reason == "excluded_sender"
        assert email_filter.should_process(make_email(sender="x@spam.example"), config).reason == "excluded_sender"
        assert email_filter.should_process(make_email(sender="x@corp.example"), config).should_process

    def test_bounce(self, email_filter):
        """Delivery failures are skipped."""
        email = make_email(subject="Undeliverable: Refund request")
        assert email_filter.should_process(email).reason == "bounce"

    @pytest.mark.parametrize(
        "headers",
        [{"List-Unsubscribe": "<mailto:u@x.example>"}, {"List-Id": "news.x.example"}, {"Precedence": "Bulk"}],
    )
    def test_mailing_lists(self, email_filter, headers):
        """List and bulk headers mark mailing list traffic."""
        assert email_filter.should_process(make_email(headers=headers)).reason == "mailing_list"

    def test_auto_submitted(self, email_filter):
        """Auto-submitted mail is skipped unless explicitly marked 'no'."""
        auto = make_email(headers={"Auto-Submitted": "auto-replied"})
        manual = make_email(headers={"Auto-Submitted": "no"})

        assert email_filter.should_process(auto).reason == "auto_generated"
        assert email_filter.should_process(manual).should_process

    def test_read_receipt(self, email_filter):
        """Read receipts are skipped."""
        assert email_filter.should_process(make_email(subject="Read: Refund request")).reason == "read_receipt"
        assert email_filter.should_process(make_email(subject="RE: Read receipt: Offer")).reason == "read_receipt"

    @pytest.mark.parametrize(
        "subject",
        ["Re: Thread: pricing for 200 units", "Unread: invoices from March", "Spread: updated margins"],
    )
    def test_words_ending_in_read_are_not_receipts(self, email_filter, subject):
        """Only a leading receipt prefix marks a read receipt."""
        assert email_filter.should_process(make_email(subject=subject)).should_process

    def test_calendar_responses(self, email_filter):
        """Meeting responses and calendar payloads are skipped."""
        accepted = make_email(subject="Accepted: Weekly sync")
        invite = make_email(subject="Planning", body="BEGIN:VCALENDAR\nVERSION:2.0\nEND:VCALENDAR")

        assert email_filter.should_process(accepted).reason == "calendar_response"
        assert email_filter.should_process(invite).reason == "calendar_response"
