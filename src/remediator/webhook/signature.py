"""HMAC verification of inbound webhook payloads.

GitHub signs each delivery with the shared secret and sends the result in
the X-Hub-Signature-256 header as ``sha256=<hexdigest>``. Verification is a
pure function of the raw body, the header and the secret.
"""

import hashlib
import hmac
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence, Union

SIGNATURE_HEADER = "X-Hub-Signature-256"

SUPPORTED_ALGORITHMS = {
    "sha256": hashlib.sha256,
    "sha1": hashlib.sha1,
}


class SignatureError(str, Enum):
    """Reasons a signature check can fail."""

    MISSING_SIGNATURE = "missing_signature"
    BAD_FORMAT = "bad_format"
    LENGTH_MISMATCH = "length_mismatch"
    MISMATCH = "mismatch"


@dataclass(frozen=True)
class SignatureVerification:
    """Outcome of a signature check.

    Attributes:
        valid: True when the header matches the payload digest.
        error: Failure reason when ``valid`` is False.
        message: Human-readable description suitable for a response body.
    """

    valid: bool
    error: Optional[SignatureError] = None
    message: str = ""


def _to_bytes(value: Union[str, bytes]) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else value


def compute_signature(
    raw_body: bytes,
    secret: Union[str, bytes],
    algorithm: str = "sha256",
) -> str:
    """Return the ``<algorithm>=<hexdigest>`` header value for a payload."""
    digestmod = SUPPORTED_ALGORITHMS[algorithm]
    digest = hmac.new(_to_bytes(secret), raw_body, digestmod=digestmod).hexdigest()
    return f"{algorithm}={digest}"


def verify_signature(
    raw_body: bytes,
    signature_header: Optional[str],
    secret: Union[str, bytes],
    algorithms: Sequence[str] = ("sha256",),
) -> SignatureVerification:
    """Verify a webhook signature header against the raw request body.

    The header must carry one of the accepted algorithm prefixes; the
    expected value is computed with that algorithm. Lengths are compared
    before the constant-time comparison, which needs equal-length inputs.

    Args:
        raw_body: Exact bytes received on the wire.
        signature_header: Value of the signature header, or None if absent.
        secret: Shared webhook secret.
        algorithms: Accepted algorithm prefixes.

    Returns:
        SignatureVerification describing the result.
    """
    if not signature_header:
        return SignatureVerification(
            valid=False,
            error=SignatureError.MISSING_SIGNATURE,
            message=f"Missing {SIGNATURE_HEADER} header",
        )

    algorithm, separator, _ = signature_header.partition("=")
    if not separator or algorithm not in algorithms or algorithm not in SUPPORTED_ALGORITHMS:
        return SignatureVerification(
            valid=False,
            error=SignatureError.BAD_FORMAT,
            message="Invalid signature format",
        )

    expected = compute_signature(raw_body, secret, algorithm).encode("utf-8")
    received = signature_header.encode("utf-8")

    if len(expected) != len(received):
        return SignatureVerification(
            valid=False,
            error=SignatureError.LENGTH_MISMATCH,
            message="Signature length mismatch",
        )

    if not hmac.compare_digest(expected, received):
        return SignatureVerification(
            valid=False,
            error=SignatureError.MISMATCH,
            message="Invalid signature",
        )

    return SignatureVerification(valid=True)


class SignatureVerifier:
    """Signature verifier bound to one shared secret.

    Attributes:
        secret: Shared webhook secret.
        algorithms: Accepted algorithm prefixes, ``sha256`` by default.
    """

    def __init__(
        self,
        secret: Union[str, bytes],
        algorithms: Sequence[str] = ("sha256",),
    ) -> None:
        self.secret = secret
        self.algorithms = tuple(algorithms)

    def verify(
        self, raw_body: bytes, signature_header: Optional[str]
    ) -> SignatureVerification:
        return verify_signature(
            raw_body, signature_header, self.secret, self.algorithms
        )
