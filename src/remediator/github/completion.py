"""Completion markers on review comments.

A comment counts as addressed once it carries the completion reaction
(``hooray`` by default). Reads use set semantics so duplicate reactions from
repeated runs are harmless.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Set

from src.remediator.github.client import GitHubAPIError, GitHubClient
from src.remediator.github.models import ReviewComment, SubjectRef

logger = logging.getLogger(__name__)

DEFAULT_REACTION = "hooray"


@dataclass
class MarkResult:
    marked: List[int] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)
    skipped_replies: List[int] = field(default_factory=list)


class CompletionTracker:
    """Reads and writes completion markers through the GitHub client.

    Attributes:
        github_client: Client used for reaction calls.
        reaction: Reaction content used as the marker.
    """

    def __init__(self, github_client: GitHubClient, reaction: str = DEFAULT_REACTION):
        self.github_client = github_client
        self.reaction = reaction

    async def addressed_set(
        self,
        subject: SubjectRef,
        comment_ids: Optional[Iterable[int]] = None,
    ) -> Set[int]:
        """Return the ids of comments on ``subject`` that carry the marker.

        Args:
            subject: Pull request to inspect.
            comment_ids: Comments to check. When omitted, every review
                comment on the pull request is listed and checked.

        Raises:
            GitHubAPIError: If listing the comments fails.
        """
        if comment_ids is None:
            comments = await self.github_client.list_review_comments(
                subject.owner, subject.repo, subject.number
            )
            comment_ids = [comment["id"] for comment in comments]

        addressed: Set[int] = set()
        for comment_id in comment_ids:
            try:
                reactions = await self.github_client.list_comment_reactions(
                    subject.owner, subject.repo, comment_id
                )
            except GitHubAPIError as exc:
                logger.warning(
                    "Could not read reactions; treating comment as unaddressed",
                    extra={"subject": str(subject), "comment_id": comment_id, "error": str(exc)},
                )
                continue
            if any(reaction.get("content") == self.reaction for reaction in reactions):
                addressed.add(comment_id)

        return addressed

    async def mark_addressed(
        self,
        subject: SubjectRef,
        comments: Iterable[ReviewComment],
    ) -> MarkResult:
        """Apply the marker to every top-level comment in ``comments``.

        Failures on individual comments are logged and do not stop the rest.
        """
        result = MarkResult()
        for comment in comments:
            if comment.is_reply:
                result.skipped_replies.append(comment.id)
                continue
            try:
                await self.github_client.add_comment_reaction(
                    subject.owner, subject.repo, comment.id, self.reaction
                )
            except GitHubAPIError as exc:
                logger.warning(
                    "Failed to mark comment as addressed",
                    extra={"subject": str(subject), "comment_id": comment.id, "error": str(exc)},
                )
                result.failed.append(comment.id)
            else:
                result.marked.append(comment.id)

        logger.info(
            "Marked comments as addressed",
            extra={
                "subject": str(subject),
                "marked": len(result.marked),
                "failed": len(result.failed),
            },
        )
        return result
