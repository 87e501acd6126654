"""Markdown formatting for agent prompts and pull request replies.

Builds the remediation instructions handed to the agent from a
ReviewFeedback and the summary comment posted once a review is addressed.
"""

from collections import OrderedDict
from pathlib import PurePosixPath
from typing import Dict, List, Optional

from src.remediator.github.models import ReviewComment, ReviewFeedback


REVIEW_STATE_LABELS = {
    "approved": "✅ Approved",
    "changes_requested": "🔄 Changes Requested",
    "commented": "💬 Commented",
    "dismissed": "❌ Dismissed",
    "pending": "⏳ Pending",
}

LANGUAGE_BY_EXTENSION = {
    "ts": "typescript",
    "tsx": "tsx",
    "js": "javascript",
    "jsx": "jsx",
    "py": "python",
    "rb": "ruby",
    "go": "go",
    "rs": "rust",
    "java": "java",
    "kt": "kotlin",
    "swift": "swift",
    "c": "c",
    "h": "c",
    "cpp": "cpp",
    "hpp": "cpp",
    "cs": "csharp",
    "php": "php",
    "sh": "bash",
    "bash": "bash",
    "zsh": "bash",
    "yaml": "yaml",
    "yml": "yaml",
    "json": "json",
    "md": "markdown",
    "sql": "sql",
    "html": "html",
    "css": "css",
    "scss": "scss",
    "vue": "vue",
}

INSTRUCTIONS = """## Instructions

Please address each piece of feedback above by making the necessary code changes.

**Guidelines:**
1. Address each comment systematically, starting from the first file
2. Make minimal, focused changes that directly address the feedback
3. If a suggestion is unclear or you disagree, explain your reasoning
4. Ensure your changes don't break existing functionality
5. Run any relevant tests to verify your changes

**IMPORTANT:**
- After making your changes, commit them with a descriptive message
- Your commit message should summarize what changes you made to address the feedback
- Do NOT push to the remote - that will be done automatically"""

SUMMARY_HEADER = "## 🤖 Review Feedback Addressed"

SUMMARY_FOOTER = "*This response was generated automatically.*"

MAX_SUMMARY_CHARS = 2000


def detect_language(file_path: str) -> str:
    """Code fence language for ``file_path``, ``diff`` when unknown."""
    suffix = PurePosixPath(file_path).suffix.lstrip(".").lower()
    return LANGUAGE_BY_EXTENSION.get(suffix, "diff")


def format_review_state(state: str) -> str:
    return REVIEW_STATE_LABELS.get(state.lower(), state)


def group_comments_by_file(
    comments: List[ReviewComment],
) -> Dict[str, List[ReviewComment]]:
    """Group comments by file, keeping first-seen file order.

    Comments within a file are sorted by line; file-level comments come first.
    """
    grouped: Dict[str, List[ReviewComment]] = OrderedDict()
    for comment in comments:
        grouped.setdefault(comment.path, []).append(comment)

    for file_comments in grouped.values():
        file_comments.sort(key=lambda c: c.line or 0)
    return grouped


def _format_comment(comment: ReviewComment) -> str:
    line_ref = f"Line {comment.line}" if comment.line else "General"
    lines = [f"**{line_ref}** (by @{comment.author}):", ""]

    if comment.diff_hunk:
        lines.append(f"```{detect_language(comment.path)}")
        lines.append(comment.diff_hunk)
        lines.append("```")
        lines.append("")

    quoted = "\n> ".join(comment.body.split("\n"))
    lines.append(f"> {quoted}")
    return "\n".join(lines)


def format_review_prompt(feedback: ReviewFeedback) -> str:
    """Build the agent instructions for a review.

    Args:
        feedback: Review feedback with the comments still to address.

    Returns:
        Markdown prompt text.
    """
    lines = [
        "# PR Review Feedback - Address Required Changes",
        "",
        "## PR Information",
        "",
        f"- **Repository:** {feedback.subject.full_repository}",
        f"- **PR #{feedback.subject.number}:** {feedback.title}",
        f"- **Branch:** `{feedback.branch}`",
        f"- **Reviewer:** @{feedback.reviewer}",
        f"- **Review Status:** {format_review_state(feedback.review_state)}",
        "",
    ]

    if feedback.review_body and feedback.review_body.strip():
        lines.extend(["## Overall Review Comment", "", feedback.review_body, ""])

    if feedback.comments:
        lines.extend(["## File-Specific Feedback", ""])
        for file_path, file_comments in group_comments_by_file(feedback.comments).items():
            lines.extend([f"### `{file_path}`", ""])
            for comment in file_comments:
                lines.append(_format_comment(comment))
                lines.append("")

    lines.append(INSTRUCTIONS)
    return "\n".join(lines)


def extract_agent_summary(output: str, max_chars: int = MAX_SUMMARY_CHARS) -> Optional[str]:
    """Return the agent's closing paragraph, or None if there is none.

    The agent ends a run by describing what it changed; that final block of
    non-empty lines is what gets quoted in the reply.
    """
    paragraphs = [p.strip() for p in output.strip().split("\n\n") if p.strip()]
    if not paragraphs:
        return None

    summary = paragraphs[-1]
    if len(summary) > max_chars:
        summary = summary[: max_chars - 3].rstrip() + "..."
    return summary


def format_summary_reply(
    addressed: int,
    total: int,
    changes_summary: Optional[str] = None,
) -> str:
    """Format the pull request comment posted after remediation."""
    lines = [SUMMARY_HEADER, ""]

    if addressed == total:
        lines.append(f"✅ All {total} comment(s) have been addressed in the latest commit.")
    else:
        lines.append(f"📝 Addressed {addressed} of {total} comment(s).")
        lines.append("")
        lines.append("Some comments may require manual attention or clarification.")

    if changes_summary:
        lines.extend(["", changes_summary])

    lines.extend(["", "---", SUMMARY_FOOTER])
    return "\n".join(lines)
