"""GitHub API client for pull request review interactions.

Async wrapper around the GitHub REST API covering what remediation needs:
- Reading pull requests and their review comments
- Reading and adding reactions on review comments
- Posting issue comments on pull requests

Includes rate limit handling and retry logic for API resilience.
"""

import asyncio
import logging
import random
import time
from typing import TYPE_CHECKING, Any, Dict, List, Optional

import httpx

if TYPE_CHECKING:
    from src.remediator.github.app_auth import GitHubAppAuth


logger = logging.getLogger(__name__)

PAGE_SIZE = 100
MAX_PAGES = 50


class GitHubAPIError(Exception):
    """Raised when a GitHub API request fails.

    Attributes:
        message: Human-readable error description.
        status_code: HTTP status code from the response.
        response_body: Response body from GitHub API.
        request_url: The URL that was requested.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_body: Optional[str] = None,
        request_url: Optional[str] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.response_body = response_body
        self.request_url = request_url
        super().__init__(message)


class RateLimitError(GitHubAPIError):
    """Raised when GitHub API rate limit is exceeded.

    Attributes:
        reset_at: Unix timestamp when the rate limit resets.
        retry_after: Seconds to wait before retrying.
    """

    def __init__(
        self,
        message: str,
        reset_at: Optional[int] = None,
        retry_after: Optional[int] = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.reset_at = reset_at
        self.retry_after = retry_after


class GitHubClient:
    """Async GitHub API client with rate limiting and retry logic.

    - Exponential backoff with full jitter for transient failures
    - Rate limit detection from X-RateLimit-* and Retry-After headers
    - Works against github.com and GitHub Enterprise Server

    Attributes:
        token: Static GitHub API token, when not authenticating as an app.
        app_auth: GitHub App credentials; per-repository installation tokens
            are used instead of ``token`` when set.
        base_url: Base URL for GitHub API.
        max_retries: Maximum number of retry attempts for transient failures.
        base_delay: Base delay in seconds for exponential backoff.
        max_delay: Maximum delay in seconds between retries.
        timeout: Request timeout in seconds.

    Example:
        >>> async with GitHubClient(token="ghp_xxx") as client:
        ...     comments = await client.list_review_comments("owner", "repo", 7)
    """

    RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}

    def __init__(
        self,
        token: Optional[str] = None,
        base_url: str = "https://api.github.com",
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        app_auth: Optional["GitHubAppAuth"] = None,
    ):
        """Initialize the GitHub client.

        Args:
            token: GitHub API token for authentication.
            base_url: Base URL for GitHub API.
            max_retries: Maximum number of retry attempts.
            base_delay: Base delay in seconds for exponential backoff.
            max_delay: Maximum delay in seconds between retries.
            timeout: Request timeout in seconds.
            transport: Optional httpx transport (used by tests).
            app_auth: Optional GitHub App authentication.
        """
        if token is None and app_auth is None:
            raise ValueError("GitHubClient needs a token or app_auth")
        self.token = token
        self.app_auth = app_auth
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._default_headers(),
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    def _default_headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": "review-remediator/1.0",
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _auth_headers(
        self, owner: Optional[str], repo: Optional[str]
    ) -> Optional[Dict[str, str]]:
        if self.app_auth is None or owner is None or repo is None:
            return None
        token = await self.app_auth.get_token_for_repository(owner, repo)
        return {"Authorization": f"Bearer {token}"}

    async def close(self) -> None:
        """Close the HTTP client and release resources."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "GitHubClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def _calculate_backoff(self, attempt: int) -> float:
        """Exponential backoff with full jitter.

        Args:
            attempt: The current retry attempt (0-indexed).
        """
        exponential_delay = self.base_delay * (2 ** attempt)
        capped_delay = min(exponential_delay, self.max_delay)
        return random.uniform(0, capped_delay)

    def _parse_int_header(self, headers: httpx.Headers, name: str) -> Optional[int]:
        value = headers.get(name)
        if value is not None:
            try:
                return int(value)
            except ValueError:
                return None
        return None

    def _rate_limit_error(self, response: httpx.Response) -> RateLimitError:
        reset_at = self._parse_int_header(response.headers, "x-ratelimit-reset")

        retry_after = None
        if reset_at is not None:
            retry_after = max(0, reset_at - int(time.time()))

        retry_after_header = self._parse_int_header(response.headers, "retry-after")
        if retry_after_header is not None:
            retry_after = retry_after_header

        logger.warning(
            "GitHub API rate limit exceeded",
            extra={"reset_at": reset_at, "retry_after": retry_after},
        )

        return RateLimitError(
            message="GitHub API rate limit exceeded",
            status_code=response.status_code,
            reset_at=reset_at,
            retry_after=retry_after,
            request_url=str(response.url),
        )

    def _is_rate_limited(self, response: httpx.Response) -> bool:
        if response.status_code == 429:
            return True
        if response.status_code == 403:
            remaining = self._parse_int_header(response.headers, "x-ratelimit-remaining")
            return remaining == 0
        return False

    async def _request(
        self,
        method: str,
        path: str,
        json_data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        owner: Optional[str] = None,
        repo: Optional[str] = None,
    ) -> httpx.Response:
        """Make an HTTP request with retry logic.

        Args:
            method: HTTP method.
            path: API path (e.g., /repos/owner/repo/pulls/1/comments).
            json_data: Optional JSON body for the request.
            params: Optional query parameters.
            owner: Repository owner, used to pick an installation token.
            repo: Repository name, used to pick an installation token.

        Returns:
            The HTTP response from GitHub.

        Raises:
            GitHubAPIError: If the request fails after all retries.
            RateLimitError: If rate limit is exceeded.
        """
        last_exception: Optional[Exception] = None
        headers = await self._auth_headers(owner, repo)

        for attempt in range(self.max_retries + 1):
            try:
                response = await self.client.request(
                    method=method,
                    url=path,
                    json=json_data,
                    params=params,
                    headers=headers,
                )
            except httpx.TimeoutException as e:
                last_exception = e
                reason = "Request timeout, retrying"
            except httpx.RequestError as e:
                last_exception = e
                reason = "Request error, retrying"
            else:
                if self._is_rate_limited(response):
                    raise self._rate_limit_error(response)

                if response.status_code in self.RETRYABLE_STATUS_CODES and attempt < self.max_retries:
                    delay = self._calculate_backoff(attempt)
                    logger.warning(
                        "Retryable error from GitHub API",
                        extra={
                            "status_code": response.status_code,
                            "attempt": attempt + 1,
                            "max_retries": self.max_retries,
                            "delay": delay,
                            "path": path,
                        },
                    )
                    await asyncio.sleep(delay)
                    continue

                if response.status_code >= 400:
                    error_body = response.text
                    logger.error(
                        "GitHub API error",
                        extra={
                            "status_code": response.status_code,
                            "path": path,
                            "method": method,
                            "response_body": error_body[:500],
                        },
                    )
                    raise GitHubAPIError(
                        message=f"GitHub API error: {response.status_code}",
                        status_code=response.status_code,
                        response_body=error_body,
                        request_url=str(response.url),
                    )

                return response

            if attempt < self.max_retries:
                delay = self._calculate_backoff(attempt)
                logger.warning(
                    reason,
                    extra={
                        "error": str(last_exception),
                        "attempt": attempt + 1,
                        "max_retries": self.max_retries,
                        "delay": delay,
                        "path": path,
                    },
                )
                await asyncio.sleep(delay)

        logger.error(
            "GitHub API request failed after all retries",
            extra={
                "path": path,
                "method": method,
                "max_retries": self.max_retries,
                "last_error": str(last_exception),
            },
        )
        raise GitHubAPIError(
            message=f"Request failed after {self.max_retries} retries: {last_exception}",
            request_url=f"{self.base_url}{path}",
        )

    async def _get_paginated(self, path: str, owner: str, repo: str) -> List[Dict[str, Any]]:
        """Collect every item from a paginated list endpoint."""
        items: List[Dict[str, Any]] = []
        for page in range(1, MAX_PAGES + 1):
            response = await self._request(
                "GET",
                path,
                params={"per_page": PAGE_SIZE, "page": page},
                owner=owner,
                repo=repo,
            )
            batch = response.json()
            items.extend(batch)
            if len(batch) < PAGE_SIZE:
                break
        return items

    async def get_pull_request(
        self, owner: str, repo: str, pr_number: int
    ) -> Dict[str, Any]:
        """Fetch a pull request.

        Raises:
            GitHubAPIError: If the request fails.
        """
        response = await self._request(
            "GET", f"/repos/{owner}/{repo}/pulls/{pr_number}", owner=owner, repo=repo
        )
        return response.json()

    async def list_review_comments(
        self, owner: str, repo: str, pr_number: int
    ) -> List[Dict[str, Any]]:
        """Fetch all review (line) comments on a pull request.

        Args:
            owner: Repository owner (user or organization).
            repo: Repository name.
            pr_number: Pull request number.

        Returns:
            Review comment objects in the order GitHub returns them.

        Raises:
            GitHubAPIError: If any page request fails.
        """
        comments = await self._get_paginated(
            f"/repos/{owner}/{repo}/pulls/{pr_number}/comments", owner, repo
        )
        logger.debug(
            "Fetched review comments",
            extra={"owner": owner, "repo": repo, "pr_number": pr_number, "count": len(comments)},
        )
        return comments

    async def list_comment_reactions(
        self, owner: str, repo: str, comment_id: int
    ) -> List[Dict[str, Any]]:
        return await self._get_paginated(
            f"/repos/{owner}/{repo}/pulls/comments/{comment_id}/reactions", owner, repo
        )

    async def add_comment_reaction(
        self, owner: str, repo: str, comment_id: int, content: str
    ) -> Dict[str, Any]:
        """Add a reaction to a review comment.

        GitHub answers 200 with the existing reaction when the same user
        already reacted with the same content.

        Raises:
            GitHubAPIError: If the request fails.
        """
        response = await self._request(
            "POST",
            f"/repos/{owner}/{repo}/pulls/comments/{comment_id}/reactions",
            json_data={"content": content},
            owner=owner,
            repo=repo,
        )
        return response.json()

    async def create_issue_comment(
        self, owner: str, repo: str, issue_number: int, body: str
    ) -> Dict[str, Any]:
        """Create a comment on an issue or pull request conversation.

        Raises:
            GitHubAPIError: If the request fails.
        """
        logger.info(
            "Creating comment",
            extra={
                "owner": owner,
                "repo": repo,
                "issue_number": issue_number,
                "body_length": len(body),
            },
        )

        response = await self._request(
            "POST",
            f"/repos/{owner}/{repo}/issues/{issue_number}/comments",
            json_data={"body": body},
            owner=owner,
            repo=repo,
        )

        result = response.json()
        logger.info(
            "Comment created successfully",
            extra={"issue_number": issue_number, "comment_id": result.get("id")},
        )
        return result
