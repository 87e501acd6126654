"""Unit tests for webhook payload parsing, admission rules and source checks."""

import pytest
from hypothesis import given, settings, strategies as st

from src.remediator.webhook.allowlist import IPAllowList, client_ip
from src.remediator.webhook.handler import (
    InvalidPayloadError,
    WebhookHandler,
    contains_bot_mention,
)
from src.remediator.webhook.models import WebhookEventType


@pytest.fixture
def handler():
    return WebhookHandler()


class TestEventType:

    @pytest.mark.parametrize(
        "header,expected",
        [
            ("pull_request_review", WebhookEventType.PULL_REQUEST_REVIEW),
            ("pull_request_review_comment", WebhookEventType.PULL_REQUEST_REVIEW_COMMENT),
            ("ping", WebhookEventType.PING),
            (" ping ", WebhookEventType.PING),
            ("issues", None),
            ("", None),
            (None, None),
        ],
    )
    def test_parse_event_type(self, handler, header, expected):
        assert handler.parse_event_type(header) == expected


class TestParseReview:

    def test_parses_review_payload(self, handler, review_payload):
        event = handler.parse_review_event(review_payload(pr_number=12, branch="fix/typo"))

        assert event.pr_number == 12
        assert event.branch == "fix/typo"
        assert event.repository.owner == "acme"
        assert event.repository.name == "widgets"
        assert event.subject_id == "acme/widgets#12"
        assert event.review.user.login == "alice"

    def test_missing_pull_request(self, handler, review_payload):
        payload = review_payload()
        del payload["pull_request"]

        with pytest.raises(InvalidPayloadError):
            handler.parse_review_event(payload)

    def test_bad_repository_name(self, handler, review_payload):
        with pytest.raises(InvalidPayloadError):
            handler.parse_review_event(review_payload(full_name="no-slash"))

    def test_ping_payload(self, handler):
        ping = handler.parse_ping_event({"zen": "Speak like a human.", "hook_id": 42, "hook": {}})

        assert ping.zen == "Speak like a human."
        assert ping.hook_id == 42


class TestAdmission:

    def test_changes_requested_is_processed(self, handler, review_payload):
        decision = handler.evaluate_review(handler.parse_review_event(review_payload()))

        assert decision.process is True

    @pytest.mark.parametrize(
        "overrides",
        [
            {"action": "edited"},
            {"action": "dismissed"},
            {"state": "approved"},
            {"state": "commented"},
            {"reviewer_type": "Bot"},
            {"pr_state": "closed"},
        ],
    )
    def test_skipped_reviews(self, handler, review_payload, overrides):
        decision = handler.evaluate_review(handler.parse_review_event(review_payload(**overrides)))

        assert decision.process is False
        assert decision.reason

    def test_unknown_bot_name_admits_nothing(self, review_payload):
        handler = WebhookHandler(require_bot_mention=True)
        event = handler.parse_review_event(review_payload(body="@fixbot please"))

        decision = handler.evaluate_mention(event, ["@fixbot"])

        assert decision.process is False
        assert decision.reason == "Bot username is unknown"

    def test_mention_not_required(self, handler, review_payload):
        event = handler.parse_review_event(review_payload())

        assert handler.evaluate_mention(event).process is True

    def test_mention_in_review_or_comments(self, review_payload):
        handler = WebhookHandler(bot_username="fixbot", require_bot_mention=True)
        event = handler.parse_review_event(review_payload(body="No mention here"))

        assert handler.evaluate_mention(event, ["just a nit"]).process is False
        assert handler.evaluate_mention(event, ["@fixbot handle this"]).process is True

        mentioned = handler.parse_review_event(review_payload(body="cc @FIXBOT"))
        assert handler.evaluate_mention(mentioned).process is True

    @pytest.mark.parametrize(
        "text,expected",
        [
            ("@fixbot please", True),
            ("thanks @FixBot.", True),
            ("@fixbotty", False),
            ("fixbot without at", False),
            ("", False),
            (None, False),
        ],
    )
    def test_contains_bot_mention(self, text, expected):
        assert contains_bot_mention(text, "fixbot") is expected


class TestSourceAddress:

    def test_forwarded_for_first_hop(self):
        headers = {"x-forwarded-for": "140.82.115.10, 10.0.0.1"}

        assert client_ip(headers, "127.0.0.1") == "140.82.115.10"

    def test_real_ip_then_peer(self):
        assert client_ip({"x-real-ip": " 192.30.252.1 "}, "127.0.0.1") == "192.30.252.1"
        assert client_ip({}, "127.0.0.1") == "127.0.0.1"
        assert client_ip({}, None) == "unknown"

    @pytest.mark.parametrize(
        "address,expected",
        [
            ("140.82.115.10", True),
            ("192.30.252.200", True),
            ("::ffff:185.199.108.5", True),
            ("203.0.113.9", False),
            ("unknown", False),
            ("", False),
        ],
    )
    def test_github_ranges(self, address, expected):
        assert IPAllowList().is_allowed(address) is expected


@st.composite
def review_payloads(draw):
    """Generate review deliveries across every admission-relevant field."""
    return {
        "action": draw(st.sampled_from(["submitted", "edited", "dismissed"])),
        "review": {
            "id": draw(st.integers(min_value=1)),
            "state": draw(st.sampled_from(["changes_requested", "CHANGES_REQUESTED", "approved", "commented"])),
            "body": draw(st.one_of(st.none(), st.text(max_size=80))),
            "user": {"login": "reviewer", "type": draw(st.sampled_from(["User", "Bot", "Organization"]))},
        },
        "pull_request": {
            "number": draw(st.integers(min_value=1, max_value=100_000)),
            "state": draw(st.sampled_from(["open", "closed"])),
            "head": {"ref": "feature/x"},
        },
        "repository": {"full_name": "acme/widgets"},
    }


class TestAdmissionProperties:

    @given(payload=review_payloads())
    @settings(max_examples=200)
    def test_processed_exactly_when_all_rules_hold(self, payload):
        handler = WebhookHandler()
        decision = handler.evaluate_review(handler.parse_review_event(payload))

        expected = (
            payload["action"] == "submitted"
            and payload["review"]["state"].lower() == "changes_requested"
            and payload["review"]["user"]["type"] != "Bot"
            and payload["pull_request"]["state"] == "open"
        )
        assert decision.process is expected
