"""Webhook payload interpretation and review admission rules.

A review is worth remediating when it was just submitted, requests
changes, was written by a person (not a bot) and targets an open pull
request. Deployments may also require the bot account to be mentioned in
the review or one of its comments.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

from pydantic import ValidationError

from .models import PingEvent, PullRequestReviewEvent, WebhookEventType

logger = logging.getLogger(__name__)


class InvalidPayloadError(ValueError):
    """Raised when a payload does not match the expected event shape."""


@dataclass(frozen=True)
class ReviewDecision:
    process: bool
    reason: str


def contains_bot_mention(text: Optional[str], bot_username: str) -> bool:
    """Return True if ``text`` mentions ``@bot_username`` as a whole word."""
    if not text or not bot_username:
        return False
    pattern = re.compile(rf"@{re.escape(bot_username)}\b", re.IGNORECASE)
    return pattern.search(text) is not None


class WebhookHandler:
    """Turns raw GitHub deliveries into typed events and admission decisions.

    Attributes:
        bot_username: Account name of the remediation bot, if known.
        require_bot_mention: Only admit reviews that mention ``bot_username``.
    """

    def __init__(
        self,
        bot_username: Optional[str] = None,
        require_bot_mention: bool = False,
    ) -> None:
        self.bot_username = bot_username
        self.require_bot_mention = require_bot_mention

    def parse_event_type(self, header: Optional[str]) -> Optional[WebhookEventType]:
        """Map the X-GitHub-Event header to a known event type."""
        if not header:
            return None
        try:
            return WebhookEventType(header.strip())
        except ValueError:
            return None

    def parse_review_event(self, payload: Dict[str, Any]) -> PullRequestReviewEvent:
        """Validate a pull_request_review payload.

        Raises:
            InvalidPayloadError: If required fields are missing or malformed.
        """
        try:
            return PullRequestReviewEvent.model_validate(payload)
        except ValidationError as e:
            logger.warning(
                "Invalid pull_request_review payload",
                extra={"errors": e.error_count()},
            )
            raise InvalidPayloadError(f"Invalid pull_request_review payload: {e}") from e

    def parse_ping_event(self, payload: Dict[str, Any]) -> PingEvent:
        try:
            return PingEvent.model_validate(payload)
        except ValidationError as e:
            raise InvalidPayloadError(f"Invalid ping payload: {e}") from e

    def evaluate_review(self, event: PullRequestReviewEvent) -> ReviewDecision:
        """Apply the admission rules that need nothing but the payload."""
        if event.action != "submitted":
            return ReviewDecision(False, f"Review action '{event.action}' is not processed")

        if event.review.state.lower() != "changes_requested":
            return ReviewDecision(
                False, f"Review state '{event.review.state}' does not request changes"
            )

        if event.review.user.is_bot:
            return ReviewDecision(False, "Reviews from bots are not processed")

        if event.pull_request.state != "open":
            return ReviewDecision(False, "Pull request is not open")

        return ReviewDecision(True, "Review requests changes")

    def review_mentions_bot(self, event: PullRequestReviewEvent) -> bool:
        return contains_bot_mention(event.review.body, self.bot_username or "")

    def evaluate_mention(
        self,
        event: PullRequestReviewEvent,
        comment_bodies: Iterable[str] = (),
    ) -> ReviewDecision:
        """Check the optional mention requirement.

        Args:
            event: The review event.
            comment_bodies: Bodies of the review's line comments.
        """
        if not self.require_bot_mention:
            return ReviewDecision(True, "Mention not required")

        if self.review_mentions_bot(event) or any(
            contains_bot_mention(body, self.bot_username or "")
            for body in comment_bodies
        ):
            return ReviewDecision(True, "Review mentions the bot")

        if not self.bot_username:
            return ReviewDecision(False, "Bot username is unknown")
        return ReviewDecision(False, f"Review does not mention @{self.bot_username}")
