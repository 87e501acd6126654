"""Property-based tests for webhook signature verification.

Testing Configuration:
- Library: Hypothesis (Python)
- Minimum iterations: 100 per property test
"""

import hashlib
import hmac

from hypothesis import given, settings, strategies as st

from src.remediator.webhook.signature import (
    SignatureError,
    SignatureVerifier,
    compute_signature,
    verify_signature,
)


payloads = st.binary(min_size=1, max_size=2048)
secrets = st.binary(min_size=1, max_size=128)


def _flip_bit(data: bytes, bit_index: int) -> bytes:
    mutated = bytearray(data)
    mutated[bit_index // 8] ^= 1 << (bit_index % 8)
    return bytes(mutated)


class TestSignatureRoundTrip:
    """A signature made with the right secret always verifies."""

    @given(payload=st.binary(max_size=2048), secret=secrets)
    @settings(max_examples=100)
    def test_correct_secret_is_valid(self, payload, secret):
        header = compute_signature(payload, secret)
        result = verify_signature(payload, header, secret)

        assert result.valid is True
        assert result.error is None

    @given(payload=st.binary(max_size=512), secret=st.text(min_size=1, max_size=64))
    @settings(max_examples=100)
    def test_text_secret_matches_hmac_sha256(self, payload, secret):
        digest = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
        assert verify_signature(payload, f"sha256={digest}", secret).valid is True


class TestSingleBitMutations:
    """Any single-bit change to payload or secret invalidates the signature."""

    @given(data=st.data(), payload=payloads, secret=secrets)
    @settings(max_examples=100)
    def test_payload_bit_flip_is_rejected(self, data, payload, secret):
        header = compute_signature(payload, secret)
        bit = data.draw(st.integers(min_value=0, max_value=len(payload) * 8 - 1))

        result = verify_signature(_flip_bit(payload, bit), header, secret)

        assert result.valid is False
        assert result.error == SignatureError.MISMATCH

    @given(data=st.data(), payload=payloads, secret=secrets)
    @settings(max_examples=100)
    def test_secret_bit_flip_is_rejected(self, data, payload, secret):
        header = compute_signature(payload, secret)
        bit = data.draw(st.integers(min_value=0, max_value=len(secret) * 8 - 1))

        result = verify_signature(payload, header, _flip_bit(secret, bit))

        assert result.valid is False


class TestSignatureScenarios:

    BODY = b'{"action":"submitted"}'

    def test_known_body_with_matching_secret(self):
        digest = hmac.new(b"topsecret", self.BODY, hashlib.sha256).hexdigest()
        result = SignatureVerifier("topsecret").verify(self.BODY, "sha256=" + digest)
        assert result.valid is True

    def test_known_body_with_wrong_secret(self):
        digest = hmac.new(b"topsecret", self.BODY, hashlib.sha256).hexdigest()
        result = SignatureVerifier("other").verify(self.BODY, "sha256=" + digest)
        assert result.valid is False
        assert result.error == SignatureError.MISMATCH

    def test_missing_header(self):
        result = verify_signature(self.BODY, None, "topsecret")
        assert result.error == SignatureError.MISSING_SIGNATURE
        assert result.message == "Missing X-Hub-Signature-256 header"

    def test_empty_header_counts_as_missing(self):
        assert verify_signature(self.BODY, "", "s").error == SignatureError.MISSING_SIGNATURE

    def test_header_without_prefix(self):
        digest = hmac.new(b"s", self.BODY, hashlib.sha256).hexdigest()
        assert verify_signature(self.BODY, digest, "s").error == SignatureError.BAD_FORMAT

    def test_unaccepted_algorithm(self):
        header = compute_signature(self.BODY, "s", algorithm="sha1")
        assert verify_signature(self.BODY, header, "s").error == SignatureError.BAD_FORMAT

    def test_sha1_accepted_when_enabled(self):
        header = compute_signature(self.BODY, "s", algorithm="sha1")
        verifier = SignatureVerifier("s", algorithms=("sha256", "sha1"))
        assert verifier.verify(self.BODY, header).valid is True

    def test_truncated_digest_is_length_mismatch(self):
        header = compute_signature(self.BODY, "s")[:-2]
        result = verify_signature(self.BODY, header, "s")
        assert result.error == SignatureError.LENGTH_MISMATCH
        assert result.message == "Signature length mismatch"
