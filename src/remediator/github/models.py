"""Review feedback models rebuilt from live GitHub state."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class SubjectRef(BaseModel):
    """Identifies one pull request."""

    model_config = ConfigDict(frozen=True)

    owner: str
    repo: str
    number: int = Field(..., gt=0)

    @property
    def full_repository(self) -> str:
        return f"{self.owner}/{self.repo}"

    def __str__(self) -> str:
        return f"{self.owner}/{self.repo}#{self.number}"


class ReviewComment(BaseModel):
    """A line comment left as part of a pull request review.

    Attributes:
        id: GitHub comment id; identity of the comment.
        path: File the comment is attached to.
        line: Line in the current diff, falling back to the original line
            when the comment is outdated; None for file-level comments.
        diff_hunk: Diff context GitHub shows above the comment.
        body: Comment text.
        author: Login of the commenter.
        is_reply: True when the comment answers another comment.
    """

    id: int
    path: str = ""
    line: Optional[int] = None
    side: Optional[str] = None
    diff_hunk: str = ""
    body: str = ""
    author: str = ""
    is_reply: bool = False
    in_reply_to: Optional[int] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "ReviewComment":
        line = data.get("line")
        if line is None:
            line = data.get("original_line")
        user = data.get("user") or {}
        return cls(
            id=data["id"],
            path=data.get("path") or "",
            line=line,
            side=data.get("side"),
            diff_hunk=data.get("diff_hunk") or "",
            body=data.get("body") or "",
            author=user.get("login") or "",
            is_reply=data.get("in_reply_to_id") is not None,
            in_reply_to=data.get("in_reply_to_id"),
        )


class ReviewFeedback(BaseModel):
    """Everything the agent needs to address one review."""

    subject: SubjectRef
    title: str = ""
    branch: str
    reviewer: str
    review_state: str
    review_body: Optional[str] = None
    comments: List[ReviewComment] = Field(default_factory=list)

    @property
    def top_level_comments(self) -> List[ReviewComment]:
        return [comment for comment in self.comments if not comment.is_reply]

    @property
    def has_work(self) -> bool:
        return bool(self.comments) or bool((self.review_body or "").strip())
