"""Shared fixtures for remediator tests."""

import json
from typing import Any, Dict, Optional

import pytest


def build_review_payload(
    pr_number: int = 7,
    branch: str = "feature/login",
    state: str = "changes_requested",
    action: str = "submitted",
    reviewer: str = "alice",
    reviewer_type: str = "User",
    pr_state: str = "open",
    body: Optional[str] = "Please fix the validation.",
    full_name: str = "acme/widgets",
) -> Dict[str, Any]:
    return {
        "action": action,
        "review": {
            "id": 1000 + pr_number,
            "state": state,
            "body": body,
            "user": {"login": reviewer, "type": reviewer_type},
        },
        "pull_request": {
            "number": pr_number,
            "title": f"Pull request {pr_number}",
            "state": pr_state,
            "head": {"ref": branch, "sha": "abc123"},
        },
        "repository": {"full_name": full_name},
    }


@pytest.fixture
def review_payload():
    """Factory for pull_request_review payload dicts."""
    return build_review_payload


@pytest.fixture
def review_body():
    """Factory for serialized pull_request_review payloads."""

    def _make(**kwargs: Any) -> bytes:
        return json.dumps(build_review_payload(**kwargs)).encode("utf-8")

    return _make
