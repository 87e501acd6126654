"""GitHub webhook intake: authenticity, admission control and parsing.

Handles these deliveries:
- ping - Webhook configured
- pull_request_review - Review submitted (queued when it requests changes)
- pull_request_review_comment - Acknowledged only
"""

from .allowlist import GITHUB_WEBHOOK_RANGES, IPAllowList, client_ip
from .handler import (
    InvalidPayloadError,
    ReviewDecision,
    WebhookHandler,
    contains_bot_mention,
)
from .models import PingEvent, PullRequestReviewEvent, WebhookEventType
from .rate_limit import RateLimiter
from .signature import (
    SIGNATURE_HEADER,
    SignatureError,
    SignatureVerification,
    SignatureVerifier,
    compute_signature,
    verify_signature,
)

__all__ = [
    "GITHUB_WEBHOOK_RANGES",
    "IPAllowList",
    "InvalidPayloadError",
    "PingEvent",
    "PullRequestReviewEvent",
    "RateLimiter",
    "ReviewDecision",
    "SIGNATURE_HEADER",
    "SignatureError",
    "SignatureVerification",
    "SignatureVerifier",
    "WebhookEventType",
    "WebhookHandler",
    "client_ip",
    "compute_signature",
    "contains_bot_mention",
    "verify_signature",
]
