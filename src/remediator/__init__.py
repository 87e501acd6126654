"""Review remediation service for GitHub pull requests.

This package turns "changes requested" reviews into pushed fixes:
- GitHub webhook intake with HMAC verification and rate limiting
- Durable SQLite event queue with crash recovery and retries
- Single-concurrency worker over one reusable git worktree
- External agent execution with turn-limit detection
- Completion tracking through comment reactions
"""

__version__ = "1.0.0"
