"""GitHub integration: REST client, review models and completion markers."""

from .app_auth import GitAuthor, GitHubAppAuth
from .client import GitHubAPIError, GitHubClient, RateLimitError
from .completion import CompletionTracker, MarkResult
from .models import ReviewComment, ReviewFeedback, SubjectRef

__all__ = [
    "CompletionTracker",
    "GitAuthor",
    "GitHubAPIError",
    "GitHubAppAuth",
    "GitHubClient",
    "MarkResult",
    "RateLimitError",
    "ReviewComment",
    "ReviewFeedback",
    "SubjectRef",
]
