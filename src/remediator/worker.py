"""Single-concurrency review remediation worker.

Pulls event ids from an in-memory FIFO fed by the webhook endpoint (and by
startup recovery), and drives each event through:
live feedback fetch -> worktree sync -> agent run -> push -> completion
markers -> optional summary reply.

Exactly one event is processed at a time. The shared worktree is the
contended resource and this is the only thing that keeps two runs off it.
"""

import asyncio
import json
import logging
import time
from typing import Dict, List, Optional

from src.remediator.formatting import (
    extract_agent_summary,
    format_review_prompt,
    format_summary_reply,
)
from src.remediator.github.client import GitHubAPIError, GitHubClient
from src.remediator.github.completion import CompletionTracker, MarkResult
from src.remediator.github.models import ReviewComment, ReviewFeedback, SubjectRef
from src.remediator.metrics import RemediatorMetrics
from src.remediator.provisioner.worktree import Worktree, WorktreeManager
from src.remediator.queue.models import EventStatus, EventType, WebhookEvent
from src.remediator.queue.store import SQLiteEventStore
from src.remediator.runner.agent import AgentResult, AgentRunner
from src.remediator.webhook.models import PullRequestReviewEvent

logger = logging.getLogger(__name__)


class RemediationError(Exception):
    """Base error for a failed processing attempt.

    Subclasses set ``retryable = False`` when retrying cannot help.
    """

    retryable = True


class AgentFailedError(RemediationError):
    """The agent exited non-zero or could not be started."""


class AgentTurnLimitError(AgentFailedError):
    """The agent ran out of turns before finishing."""


class DirtyWorktreeError(AgentFailedError):
    """The agent left uncommitted changes behind."""


class UnsupportedEventError(RemediationError):
    """A stored event cannot be decoded into something the worker handles."""

    retryable = False


def decode_review_event(event: WebhookEvent) -> PullRequestReviewEvent:
    """Decode a stored review payload.

    Raises:
        UnsupportedEventError: If the payload is not a valid review event.
    """
    try:
        return PullRequestReviewEvent.model_validate(json.loads(event.payload))
    except ValueError as exc:
        raise UnsupportedEventError(
            f"Stored payload for event {event.id} is not a review event: {exc}"
        ) from exc


class ReviewWorker:
    """Processes queued review events one at a time, in admission order.

    Attributes:
        store: Durable event queue.
        github_client: GitHub API client.
        completion_tracker: Reads and writes completion markers.
        worktree_manager: Owner of the shared worktree.
        agent_runner: Runs the external agent.
        metrics: Optional Prometheus metrics.
        auto_reply: Post a summary comment after a successful run.
        retry_delay_seconds: Delay before a retryable failure is re-queued.
    """

    def __init__(
        self,
        store: SQLiteEventStore,
        github_client: GitHubClient,
        completion_tracker: CompletionTracker,
        worktree_manager: WorktreeManager,
        agent_runner: AgentRunner,
        metrics: Optional[RemediatorMetrics] = None,
        auto_reply: bool = False,
        git_author_name: Optional[str] = None,
        git_author_email: Optional[str] = None,
        retry_delay_seconds: float = 0.0,
    ):
        self.store = store
        self.github_client = github_client
        self.completion_tracker = completion_tracker
        self.worktree_manager = worktree_manager
        self.agent_runner = agent_runner
        self.metrics = metrics
        self.auto_reply = auto_reply
        self.git_author_name = git_author_name
        self.git_author_email = git_author_email
        self.retry_delay_seconds = retry_delay_seconds

        self._queue: "asyncio.Queue[str]" = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self._retry_handles: Dict[str, asyncio.TimerHandle] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def queued(self) -> int:
        return self._queue.qsize()

    async def recover(self) -> int:
        """Re-admit events left pending or processing by a previous run.

        Must run before new events are submitted so recovered work keeps
        its place at the front of the queue.

        Returns:
            Number of events re-admitted.
        """
        events = await self.store.get_pending_events()
        for event in events:
            self.submit(event.id)

        if events:
            logger.info(
                "Recovered pending events",
                extra={"count": len(events), "event_ids": [e.id for e in events]},
            )
        return len(events)

    def submit(self, event_id: str) -> None:
        """Queue an enqueued event for processing."""
        self._queue.put_nowait(event_id)

    def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run(), name="review-worker")
        logger.info("Review worker started")

    async def stop(self) -> None:
        """Stop the worker. An in-flight event stays processing and is
        recovered on the next start."""
        for handle in self._retry_handles.values():
            handle.cancel()
        self._retry_handles.clear()

        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Review worker stopped")

    async def join(self) -> None:
        """Wait until every queued event has been processed."""
        await self._queue.join()

    async def _run(self) -> None:
        while True:
            event_id = await self._queue.get()
            try:
                await self.process_event(event_id)
            except Exception:
                logger.exception(
                    "Unexpected error while processing event",
                    extra={"event_id": event_id},
                )
            finally:
                self._queue.task_done()

    def _schedule_retry(self, event_id: str) -> None:
        if self.retry_delay_seconds <= 0:
            self.submit(event_id)
            return

        loop = asyncio.get_running_loop()
        self._retry_handles[event_id] = loop.call_later(
            self.retry_delay_seconds, self._readmit, event_id
        )

    def _readmit(self, event_id: str) -> None:
        self._retry_handles.pop(event_id, None)
        self.submit(event_id)

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def process_event(self, event_id: str) -> Optional[EventStatus]:
        """Run one processing attempt for ``event_id``.

        Returns:
            The event's status after the attempt, or None if the event was
            missing or already terminal.
        """
        event = await self.store.get_event(event_id)
        if event is None or event.is_terminal:
            logger.debug("Skipping event", extra={"event_id": event_id})
            return None

        start_time = time.monotonic()
        await self.store.mark_processing(event_id)
        logger.info(
            "Processing event",
            extra={
                "event_id": event_id,
                "event_type": event.type.value,
                "attempt": event.retry_count + 1,
            },
        )

        try:
            await self._remediate(event)
        except Exception as exc:
            return await self._fail(event, exc, start_time)

        await self.store.mark_completed(event_id)
        self._record("completed", start_time)
        logger.info("Event completed", extra={"event_id": event_id})
        return EventStatus.COMPLETED

    async def _fail(
        self, event: WebhookEvent, exc: Exception, start_time: float
    ) -> EventStatus:
        retryable = getattr(exc, "retryable", True)
        logger.exception(
            "Event processing failed",
            extra={"event_id": event.id, "retryable": retryable},
        )

        status = await self.store.mark_failed(
            event.id, f"{type(exc).__name__}: {exc}", retryable=retryable
        )
        if status == EventStatus.PENDING:
            self._record("retry", start_time)
            self._schedule_retry(event.id)
        else:
            self._record("failed", start_time)
        return status

    def _record(self, result: str, start_time: float) -> None:
        if self.metrics is not None:
            self.metrics.record_attempt(result, time.monotonic() - start_time)

    async def _remediate(self, event: WebhookEvent) -> None:
        if event.type == EventType.PING:
            return
        if event.type != EventType.REVIEW_SUBMITTED:
            raise UnsupportedEventError(f"Unsupported event type {event.type.value}")

        review_event = decode_review_event(event)
        subject = SubjectRef(
            owner=review_event.repository.owner,
            repo=review_event.repository.name,
            number=review_event.pr_number,
        )

        feedback = await self._build_feedback(review_event, subject)
        if feedback is None:
            return
        if not feedback.has_work:
            logger.info(
                "All review feedback already addressed",
                extra={"event_id": event.id, "subject": str(subject)},
            )
            return

        async with self.worktree_manager.lease(feedback.branch) as worktree:
            result = await self._run_agent(feedback, worktree)
            await self._publish(worktree)

        marked = await self.completion_tracker.mark_addressed(subject, feedback.comments)

        if self.auto_reply:
            await self._post_summary(feedback, marked, result)

    async def _build_feedback(
        self,
        review_event: PullRequestReviewEvent,
        subject: SubjectRef,
    ) -> Optional[ReviewFeedback]:
        """Rebuild review feedback from the pull request's current state.

        Returns None when the pull request has been closed since the event
        was queued.
        """
        pull_request = await self.github_client.get_pull_request(
            subject.owner, subject.repo, subject.number
        )
        if pull_request.get("state") != "open":
            logger.info(
                "Pull request is no longer open; nothing to do",
                extra={"subject": str(subject)},
            )
            return None

        raw_comments = await self.github_client.list_review_comments(
            subject.owner, subject.repo, subject.number
        )
        comments = [ReviewComment.from_api(c) for c in raw_comments]
        addressed = await self.completion_tracker.addressed_set(
            subject, [c.id for c in comments if not c.is_reply]
        )
        pending = self._unaddressed(comments, addressed)

        logger.info(
            "Fetched review feedback",
            extra={
                "subject": str(subject),
                "comments": len(comments),
                "already_addressed": len(addressed),
                "pending": len(pending),
            },
        )

        head = pull_request.get("head") or {}
        return ReviewFeedback(
            subject=subject,
            title=pull_request.get("title") or review_event.pull_request.title,
            branch=head.get("ref") or review_event.branch,
            reviewer=review_event.review.user.login,
            review_state=review_event.review.state,
            review_body=review_event.review.body,
            comments=pending,
        )

    def _unaddressed(
        self, comments: List[ReviewComment], addressed: set
    ) -> List[ReviewComment]:
        return [
            c
            for c in comments
            if c.id not in addressed and c.in_reply_to not in addressed
        ]

    def _author_env(self) -> Optional[Dict[str, str]]:
        env: Dict[str, str] = {}
        if self.git_author_name:
            env["GIT_AUTHOR_NAME"] = self.git_author_name
            env["GIT_COMMITTER_NAME"] = self.git_author_name
        if self.git_author_email:
            env["GIT_AUTHOR_EMAIL"] = self.git_author_email
            env["GIT_COMMITTER_EMAIL"] = self.git_author_email
        return env or None

    async def _run_agent(
        self, feedback: ReviewFeedback, worktree: Worktree
    ) -> AgentResult:
        """Run the agent and check it left a clean, committed tree.

        Raises:
            AgentTurnLimitError: The agent hit its turn limit.
            AgentFailedError: The agent exited non-zero.
            DirtyWorktreeError: Uncommitted changes remain.
        """
        instructions = format_review_prompt(feedback)
        result = await self.agent_runner.run(
            instructions, worktree.path, env=self._author_env()
        )

        if result.hit_turn_limit:
            raise AgentTurnLimitError(
                f"Agent reached its turn limit on {feedback.subject}"
            )
        if not result.success:
            raise AgentFailedError(
                f"Agent exited with code {result.exit_code} on {feedback.subject}"
            )
        if await self.worktree_manager.has_uncommitted_changes(worktree):
            raise DirtyWorktreeError(
                f"Agent left uncommitted changes on {feedback.branch}"
            )
        return result

    async def _publish(self, worktree: Worktree) -> int:
        """Push new commits, if any.

        Returns:
            Number of commits pushed.
        """
        ahead = await self.worktree_manager.commits_ahead(worktree)
        if ahead == 0:
            logger.info(
                "Agent made no commits; nothing to push",
                extra={"branch": worktree.branch_name},
            )
            return 0

        await self.worktree_manager.push(worktree)
        logger.info(
            "Pushed remediation commits",
            extra={"branch": worktree.branch_name, "commits": ahead},
        )
        return ahead

    async def _post_summary(
        self,
        feedback: ReviewFeedback,
        marked: MarkResult,
        result: AgentResult,
    ) -> None:
        body = format_summary_reply(
            addressed=len(marked.marked),
            total=len(feedback.top_level_comments),
            changes_summary=extract_agent_summary(result.output),
        )
        subject = feedback.subject
        try:
            await self.github_client.create_issue_comment(
                subject.owner, subject.repo, subject.number, body
            )
        except GitHubAPIError:
            logger.warning(
                "Failed to post review summary",
                extra={"subject": str(subject)},
                exc_info=True,
            )
