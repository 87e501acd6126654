"""External agent execution."""

from .agent import TURN_LIMIT_MARKER, AgentResult, AgentRunner

__all__ = ["AgentResult", "AgentRunner", "TURN_LIMIT_MARKER"]
