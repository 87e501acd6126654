"""Service configuration using pydantic-settings.

Settings are read from environment variables with the REMEDIATOR_ prefix
(e.g. REMEDIATOR_WEBHOOK_SECRET). The webhook secret is required, together
with either a GitHub token or GitHub App credentials; everything else has a
working default for local use.
"""

from typing import Optional

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RemediatorSettings(BaseSettings):
    """Remediation service configuration from environment variables.

    Required fields:
    - webhook_secret: Shared secret for verifying webhook signatures
    - github_token, or github_app_id plus a private key: credentials used for
      comments, reactions and pull request reads
    """

    model_config = SettingsConfigDict(
        env_prefix="REMEDIATOR_",
        case_sensitive=False,
    )

    # -------------------------------------------------------------------------
    # GitHub Configuration
    # -------------------------------------------------------------------------
    webhook_secret: str

    github_token: Optional[str] = None

    # GitHub App credentials; installation tokens replace github_token when set.
    # The private key is PEM text or base64-encoded PEM.
    github_app_id: Optional[str] = None
    github_app_private_key: Optional[str] = None
    github_app_private_key_path: Optional[str] = None

    # Base URL for GitHub API (supports GitHub Enterprise)
    github_base_url: str = "https://api.github.com"

    # Reaction content used to flag a review comment as addressed
    completion_reaction: str = "hooray"

    # Only process reviews that mention this account, when enabled.
    # Derived from the GitHub App when unset.
    bot_username: Optional[str] = None
    require_bot_mention: bool = False

    # -------------------------------------------------------------------------
    # Server Configuration
    # -------------------------------------------------------------------------
    host: str = "0.0.0.0"

    port: int = 3000

    # Post a summary comment on the pull request after a successful run
    auto_reply: bool = False

    # Reject requests that do not come from GitHub's webhook IP ranges
    validate_ip: bool = False

    debug: bool = False

    rate_limit_window_seconds: float = 60.0
    rate_limit_max_requests: int = 30

    # -------------------------------------------------------------------------
    # Agent Configuration
    # -------------------------------------------------------------------------
    agent_cli_path: str = "claude"

    agent_max_turns: int = 500

    # Process-level kill switch; None leaves the agent unbounded
    agent_timeout_seconds: Optional[int] = None

    # -------------------------------------------------------------------------
    # Queue Configuration
    # -------------------------------------------------------------------------
    queue_db_path: str = "/tmp/remediator/queue.db"

    max_retries: int = 3

    retry_delay_seconds: float = 30.0

    # Completed and failed events older than this are purged
    event_retention_days: int = 7

    # -------------------------------------------------------------------------
    # Repository Configuration
    # -------------------------------------------------------------------------
    repository_path: str = "."

    # Defaults to <repository>/.remediator/review-worktree
    worktree_path: Optional[str] = None

    # Derived from the GitHub App when unset
    git_author_name: Optional[str] = None
    git_author_email: Optional[str] = None

    # -------------------------------------------------------------------------
    # Validators
    # -------------------------------------------------------------------------
    @field_validator("webhook_secret")
    @classmethod
    def validate_webhook_secret(cls, v: str) -> str:
        """Validate that webhook secret is not empty."""
        if not v or not v.strip():
            raise ValueError("webhook_secret cannot be empty")
        return v

    @field_validator("github_token", "github_app_id", "github_app_private_key")
    @classmethod
    def validate_not_blank(cls, v: Optional[str]) -> Optional[str]:
        """Validate that optional credentials are not empty when given."""
        if v is not None and not v.strip():
            raise ValueError("credential cannot be empty")
        return v

    @field_validator("github_base_url")
    @classmethod
    def validate_github_base_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("github_base_url must start with http:// or https://")
        return v

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate that port is in valid range."""
        if not 1 <= v <= 65535:
            raise ValueError("port must be between 1 and 65535")
        return v

    @field_validator("agent_max_turns", "rate_limit_max_requests", "event_retention_days")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    @field_validator("agent_timeout_seconds")
    @classmethod
    def validate_agent_timeout(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 1:
            raise ValueError("agent_timeout_seconds must be at least 1")
        return v

    @field_validator("max_retries")
    @classmethod
    def validate_max_retries(cls, v: int) -> int:
        if v < 0:
            raise ValueError("max_retries cannot be negative")
        return v

    @field_validator("rate_limit_window_seconds")
    @classmethod
    def validate_rate_limit_window(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("rate_limit_window_seconds must be positive")
        return v

    @field_validator("retry_delay_seconds")
    @classmethod
    def validate_retry_delay(cls, v: float) -> float:
        if v < 0:
            raise ValueError("retry_delay_seconds cannot be negative")
        return v

    @field_validator("queue_db_path")
    @classmethod
    def validate_queue_db_path(cls, v: str) -> str:
        """Validate that the queue location is a file path."""
        if not v or not v.strip():
            raise ValueError("queue_db_path cannot be empty")
        if v.endswith(("/", "\\")):
            raise ValueError("queue_db_path must point to a file")
        return v

    @model_validator(mode="after")
    def validate_credentials(self) -> "RemediatorSettings":
        """Validate that one way of authenticating with GitHub is configured."""
        if self.github_app_id:
            if not (self.github_app_private_key or self.github_app_private_key_path):
                raise ValueError(
                    "github_app_id needs github_app_private_key or github_app_private_key_path"
                )
        elif not self.github_token:
            raise ValueError("github_token is required unless github_app_id is set")
        return self

    @model_validator(mode="after")
    def validate_bot_mention(self) -> "RemediatorSettings":
        """Validate that the bot's name is known when mentions are required."""
        if self.require_bot_mention and not (self.bot_username or self.github_app_id):
            raise ValueError("require_bot_mention needs bot_username or a GitHub App")
        return self

    @property
    def uses_github_app(self) -> bool:
        return self.github_app_id is not None


def get_settings() -> RemediatorSettings:
    """Create and return RemediatorSettings instance.

    Returns:
        RemediatorSettings: Configured settings instance.

    Raises:
        pydantic.ValidationError: If required fields are missing or invalid.
    """
    return RemediatorSettings()
