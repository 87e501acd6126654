"""GitHub webhook payload models.

Only the fields the service reads are modelled; pydantic ignores the rest of
the (large) GitHub payloads.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator


class WebhookEventType(str, Enum):
    """Values of the X-GitHub-Event header the service understands.

    Attributes:
        PING: Sent once when a webhook is configured.
        PULL_REQUEST_REVIEW: A review was submitted, edited or dismissed.
            Submitted reviews requesting changes are queued for remediation.
        PULL_REQUEST_REVIEW_COMMENT: A single review comment changed.
            Acknowledged but not processed; the review event covers it.
    """

    PING = "ping"
    PULL_REQUEST_REVIEW = "pull_request_review"
    PULL_REQUEST_REVIEW_COMMENT = "pull_request_review_comment"


class GitHubUser(BaseModel):
    login: str = Field(..., min_length=1)
    type: str = Field(default="User", description="User, Bot or Organization")

    @property
    def is_bot(self) -> bool:
        return self.type == "Bot"


class BranchRef(BaseModel):
    ref: str = Field(..., min_length=1, description="Branch name")
    sha: Optional[str] = None


class PullRequestInfo(BaseModel):
    number: int = Field(..., gt=0)
    title: str = ""
    state: str = Field(..., description="open or closed")
    head: BranchRef


class ReviewInfo(BaseModel):
    id: int
    state: str = Field(..., description="approved, changes_requested, commented, ...")
    body: Optional[str] = None
    user: GitHubUser


class RepositoryInfo(BaseModel):
    full_name: str = Field(..., description="owner/name")

    @field_validator("full_name")
    @classmethod
    def validate_full_name(cls, v: str) -> str:
        owner, _, name = v.partition("/")
        if not owner or not name or "/" in name:
            raise ValueError("full_name must have the form owner/name")
        return v

    @property
    def owner(self) -> str:
        return self.full_name.split("/", 1)[0]

    @property
    def name(self) -> str:
        return self.full_name.split("/", 1)[1]


class PullRequestReviewEvent(BaseModel):
    """Parsed ``pull_request_review`` webhook payload.

    Attributes:
        action: submitted, edited or dismissed.
        review: The review that triggered the delivery.
        pull_request: The reviewed pull request at delivery time.
        repository: The repository the pull request belongs to.
    """

    action: str
    review: ReviewInfo
    pull_request: PullRequestInfo
    repository: RepositoryInfo

    @property
    def pr_number(self) -> int:
        return self.pull_request.number

    @property
    def branch(self) -> str:
        return self.pull_request.head.ref

    @property
    def subject_id(self) -> str:
        """Identifier in the format "{owner}/{repo}#{number}"."""
        return f"{self.repository.full_name}#{self.pull_request.number}"


class PingEvent(BaseModel):
    zen: str = ""
    hook_id: Optional[int] = None
