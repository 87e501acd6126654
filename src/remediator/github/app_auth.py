"""GitHub App authentication.

A GitHub App authenticates in two steps:
1. A short-lived JWT signed with the app's private key identifies the app
2. The JWT is exchanged for an installation access token for one repository

Installation ids and tokens are cached per repository. A cached token is
reused until it is within five minutes of expiring. The app's own account
(``<slug>[bot]``) doubles as the bot name for mention checks and as the
commit identity for the agent.
"""

import base64
import binascii
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

import httpx
import jwt

from src.remediator.github.client import GitHubAPIError

logger = logging.getLogger(__name__)

# Issued in the past to tolerate clock skew; GitHub caps the lifetime at 10 minutes
JWT_BACKDATE_SECONDS = 60
JWT_LIFETIME_SECONDS = 600
TOKEN_REFRESH_MARGIN_SECONDS = 300


@dataclass(frozen=True)
class GitAuthor:
    name: str
    email: str


@dataclass(frozen=True)
class InstallationToken:
    """An installation access token and its expiry (Unix seconds)."""

    token: str
    expires_at: float

    def is_fresh(self, now: float) -> bool:
        return self.expires_at - TOKEN_REFRESH_MARGIN_SECONDS > now


def load_private_key(key: Optional[str] = None, key_path: Optional[str] = None) -> str:
    """Return the app's PEM private key from a file or inline text.

    Inline keys may be PEM text or base64-encoded PEM.

    Raises:
        OSError: If ``key_path`` cannot be read.
        ValueError: If no key is given or the inline key cannot be decoded.
    """
    if key_path:
        return Path(key_path).read_text(encoding="utf-8")
    if not key:
        raise ValueError("No GitHub App private key configured")
    if "-----BEGIN" in key:
        return key
    try:
        return base64.b64decode(key, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as exc:
        raise ValueError("GitHub App private key is neither PEM nor base64") from exc


def _parse_expiry(value: str) -> float:
    return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()


class GitHubAppAuth:
    """Mints and caches installation tokens for a GitHub App.

    Attributes:
        app_id: Numeric id of the GitHub App.
        base_url: Base URL for GitHub API.
        timeout: Request timeout in seconds.
    """

    def __init__(
        self,
        app_id: str,
        private_key: str,
        base_url: str = "https://api.github.com",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.app_id = app_id
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._private_key = private_key
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._installations: Dict[str, int] = {}
        self._tokens: Dict[str, InstallationToken] = {}
        self._app_info: Optional[Dict[str, Any]] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={
                    "Accept": "application/vnd.github+json",
                    "X-GitHub-Api-Version": "2022-11-28",
                    "User-Agent": "review-remediator/1.0",
                },
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    def create_jwt(self, now: Optional[float] = None) -> str:
        """Sign a JWT that authenticates as the app itself."""
        issued_at = int(now if now is not None else time.time())
        payload = {
            "iat": issued_at - JWT_BACKDATE_SECONDS,
            "exp": issued_at + JWT_LIFETIME_SECONDS,
            "iss": self.app_id,
        }
        return jwt.encode(payload, self._private_key, algorithm="RS256")

    async def _request(self, method: str, path: str, as_app: bool = True) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {self.create_jwt()}"} if as_app else None
        try:
            response = await self.client.request(method, path, headers=headers)
        except httpx.RequestError as exc:
            raise GitHubAPIError(
                message=f"GitHub App request failed: {exc}",
                request_url=f"{self.base_url}{path}",
            ) from exc

        if response.status_code >= 400:
            logger.error(
                "GitHub App API error",
                extra={"status_code": response.status_code, "path": path},
            )
            raise GitHubAPIError(
                message=f"GitHub App API error: {response.status_code}",
                status_code=response.status_code,
                response_body=response.text,
                request_url=str(response.url),
            )
        return response.json()

    async def get_installation_id(self, owner: str, repo: str) -> int:
        """Find the app's installation for a repository.

        Raises:
            GitHubAPIError: If the app is not installed on the repository.
        """
        key = f"{owner}/{repo}"
        if key in self._installations:
            return self._installations[key]

        try:
            data = await self._request("GET", f"/repos/{owner}/{repo}/installation")
        except GitHubAPIError as exc:
            if exc.status_code == 404:
                raise GitHubAPIError(
                    message=f"GitHub App is not installed on repository {key}",
                    status_code=404,
                    response_body=exc.response_body,
                    request_url=exc.request_url,
                ) from exc
            raise

        self._installations[key] = data["id"]
        return data["id"]

    async def create_installation_token(self, installation_id: int) -> InstallationToken:
        data = await self._request(
            "POST", f"/app/installations/{installation_id}/access_tokens"
        )
        return InstallationToken(token=data["token"], expires_at=_parse_expiry(data["expires_at"]))

    async def get_token_for_repository(self, owner: str, repo: str) -> str:
        """Return an installation token for ``owner/repo``, minting one if needed."""
        key = f"{owner}/{repo}"
        cached = self._tokens.get(key)
        if cached is not None and cached.is_fresh(time.time()):
            return cached.token

        installation_id = await self.get_installation_id(owner, repo)
        token = await self.create_installation_token(installation_id)
        self._tokens[key] = token
        logger.info(
            "Minted installation token",
            extra={"repository": key, "installation_id": installation_id},
        )
        return token.token

    async def get_app_info(self) -> Dict[str, Any]:
        if self._app_info is None:
            self._app_info = await self._request("GET", "/app")
        return self._app_info

    async def get_bot_username(self) -> str:
        """Return the login of the app's bot account."""
        info = await self.get_app_info()
        return f"{info['slug']}[bot]"

    async def get_git_author(self) -> GitAuthor:
        """Return the commit identity GitHub attributes to the app's bot account."""
        login = await self.get_bot_username()
        user = await self._request("GET", f"/users/{login}", as_app=False)
        return GitAuthor(
            name=login,
            email=f"{user['id']}+{login}@users.noreply.github.com",
        )
