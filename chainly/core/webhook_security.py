"""Webhook authentication primitives.

HMAC signature checks for provider webhooks, constant-time shared secret
comparison for generic webhook triggers, and signed opaque state tokens
used to carry OAuth callback context across a third-party redirect.

None of the verification helpers raise on bad input: they return ``False``
or ``None`` so routes can map the outcome onto 400/401 responses.
"""

import base64
import binascii
import hashlib
import hmac
import json
import secrets
import time
from typing import Any

import structlog

logger = structlog.get_logger()

SIGNATURE_PREFIX = "sha256="
STATE_KEY_NAMESPACE = "state-signing:"


class SignedStateError(Exception):
    """Signed state token is invalid or expired."""

    pass


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


def verify_signature(
    payload: bytes | str,
    provided_signature: str | None,
    secret: str | None,
) -> bool:
    """Verify a ``sha256=<hex>`` HMAC signature over the raw payload.

    Args:
        payload: Raw request body exactly as received
        provided_signature: Signature header value
        secret: Per-workflow webhook secret

    Returns:
        True only if the signature matches the HMAC of the payload
    """
    if not provided_signature or not secret:
        return False
    if not provided_signature.startswith(SIGNATURE_PREFIX):
        return False

    if isinstance(payload, str):
        payload = payload.encode("utf-8")

    try:
        provided = bytes.fromhex(provided_signature[len(SIGNATURE_PREFIX):])
    except ValueError:
        return False

    computed = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).digest()
    return hmac.compare_digest(provided, computed)


def verify_shared_secret(provided: str | None, expected: str | None) -> bool:
    """Compare a caller-supplied secret with the configured one in constant time.

    Both operands are NUL-padded to the same length first so a length
    mismatch does not short-circuit the comparison.
    """
    if not provided or not expected:
        return False

    max_length = max(len(provided), len(expected))
    padded_provided = provided.ljust(max_length, "\0").encode("utf-8")
    padded_expected = expected.ljust(max_length, "\0").encode("utf-8")

    # The padded comparison alone would accept "abc" for "abc\0"
    equal = hmac.compare_digest(padded_provided, padded_expected)
    return equal and len(provided) == len(expected)


def generate_webhook_secret(length: int = 32) -> str:
    """Generate a random hex secret for a webhook trigger node."""
    return secrets.token_hex(length)


class SignedStateCodec:
    """Creates and verifies tamper-evident state tokens.

    Token format: ``base64url(json payload).base64url(HMAC-SHA256(payload))``.
    The signing key is derived from the master secret under its own
    namespace, so it differs from the credential vault key.

    Example usage:
        codec = SignedStateCodec(settings.encryption_key.get_secret_value())
        token = codec.create({"userId": "u1"}, ttl=600)
        payload = codec.verify(token)
        if payload is None or codec.is_expired(payload):
            ...
    """

    def __init__(self, master_secret: str) -> None:
        if not master_secret:
            raise ValueError("ENCRYPTION_KEY is not set")
        self._key = hashlib.sha256(
            f"{STATE_KEY_NAMESPACE}{master_secret}".encode("utf-8")
        ).hexdigest().encode("ascii")

    def _sign(self, payload: str) -> bytes:
        return hmac.new(self._key, payload.encode("ascii"), hashlib.sha256).digest()

    def create(self, data: dict[str, Any], ttl: int | None = None) -> str:
        """Sign ``data`` into an opaque token.

        Args:
            data: JSON-serializable payload
            ttl: Lifetime in seconds, stored as ``exp`` inside the payload

        Returns:
            Signed token
        """
        body = dict(data)
        if ttl is not None:
            body["exp"] = int(time.time()) + ttl

        payload = _b64encode(json.dumps(body, separators=(",", ":")).encode("utf-8"))
        return f"{payload}.{_b64encode(self._sign(payload))}"

    def verify(self, token: str | None) -> dict[str, Any] | None:
        """Verify a token and return its payload.

        The MAC is checked in constant time before the payload is parsed.
        Expiry is not checked here; see is_expired().

        Returns:
            Decoded payload, or None if the token is missing, malformed or forged
        """
        if not token:
            return None

        parts = token.split(".")
        if len(parts) != 2:
            return None

        payload, signature = parts
        try:
            provided = _b64decode(signature)
            expected = self._sign(payload)
        except (binascii.Error, ValueError, UnicodeEncodeError):
            return None

        if not hmac.compare_digest(provided, expected):
            logger.warning("signed_state_mismatch")
            return None

        try:
            data = json.loads(_b64decode(payload).decode("utf-8"))
        except (binascii.Error, ValueError):
            return None

        return data if isinstance(data, dict) else None

    @staticmethod
    def is_expired(payload: dict[str, Any], now: float | None = None) -> bool:
        """Check the ``exp`` field of a verified payload.

        A payload without ``exp`` never expires.
        """
        exp = payload.get("exp")
        if exp is None:
            return False
        if not isinstance(exp, (int, float)):
            return True
        current = time.time() if now is None else now
        return current >= exp

    def load(self, token: str | None) -> dict[str, Any]:
        """Verify a token and its expiry, raising on any problem.

        Raises:
            SignedStateError: If the token is forged, malformed or expired
        """
        payload = self.verify(token)
        if payload is None:
            raise SignedStateError("Invalid or tampered state parameter")
        if self.is_expired(payload):
            raise SignedStateError("State parameter has expired")
        return payload
