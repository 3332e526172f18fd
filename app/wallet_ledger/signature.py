import hashlib
import hmac
import logging
from typing import Optional

from .exceptions import AuthenticationError, ConfigurationError

logger = logging.getLogger(__name__)


def compute_signature(secret: str, payload: bytes) -> str:
    """Hex HMAC-SHA256 of ``payload`` keyed with ``secret``."""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


class SignatureVerifier:
    """Authenticates raw webhook bodies against a shared secret.

    The digest is always computed over the bytes exactly as received; callers
    must not hand in a re-serialized body.

    With no secret the verifier runs in permissive mode, which is refused in
    production and logged on every request elsewhere.
    """

    def __init__(self, secret: Optional[str], *, production: bool = False) -> None:
        if not secret and production:
            raise ConfigurationError(
                "Webhook secret is required in production; refusing permissive mode"
            )
        self._secret = secret or None
        if self._secret is None:
            logger.warning(
                "No webhook secret configured: signature verification is DISABLED"
            )

    @property
    def permissive(self) -> bool:
        return self._secret is None

    def verify(self, payload: bytes, signature: Optional[str]) -> None:
        if self._secret is None:
            logger.warning(
                "Accepting unsigned webhook (%d bytes) in permissive mode", len(payload)
            )
            return

        if not signature:
            logger.warning("Webhook rejected: missing signature header")
            raise AuthenticationError("Missing webhook signature")

        expected = compute_signature(self._secret, payload)
        provided = signature.strip().lower()
        if provided.startswith("sha256="):
            provided = provided[len("sha256="):]
        if not hmac.compare_digest(expected, provided):
            logger.warning("Webhook rejected: signature mismatch")
            raise AuthenticationError("Invalid webhook signature")
