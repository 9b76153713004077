"""HMAC-SHA256 webhook signature verification.

The signature is always computed over the exact raw request bytes. Parsing
the JSON and serializing it again changes key order and whitespace, so a
reconstructed body never verifies.
"""

import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Optional, Sequence

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SignatureCheck:
    """Outcome of a verification. Truthy when a secret matched."""

    valid: bool
    secret_index: Optional[int] = None
    reason: Optional[str] = None

    @property
    def used_secondary(self) -> bool:
        return self.valid and bool(self.secret_index)

    def __bool__(self) -> bool:
        return self.valid


def compute_signature(raw_body: bytes, secret: str) -> str:
    """Lower-case hex HMAC-SHA256 of ``raw_body`` keyed with ``secret``."""
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest().lower()


def verify_signature(
    raw_body: Optional[bytes],
    signature_header: Optional[str],
    secrets: Sequence[Optional[str]],
) -> SignatureCheck:
    """Check ``signature_header`` against each configured secret in order.

    Fails closed: a missing body, header or secret returns an invalid
    result. Never raises.
    """
    if not raw_body:
        return SignatureCheck(False, reason="missing body")
    if not signature_header or not isinstance(signature_header, str):
        return SignatureCheck(False, reason="missing signature")
    candidates = [(i, s) for i, s in enumerate(secrets or []) if s]
    if not candidates:
        return SignatureCheck(False, reason="missing secret")
    if isinstance(raw_body, str):
        raw_body = raw_body.encode("utf-8")

    provided = signature_header.strip().lower().encode("utf-8")
    for index, secret in candidates:
        expected = compute_signature(raw_body, secret).encode("ascii")
        if hmac.compare_digest(expected, provided):
            return SignatureCheck(True, secret_index=index)
    return SignatureCheck(False, reason="signature mismatch")


class SignatureVerifier:
    """Verifier bound to a primary and optional secondary secret (key rotation)."""

    def __init__(self, primary: Optional[str], secondary: Optional[str] = None):
        self.primary = primary or None
        self.secondary = secondary or None

    @property
    def configured(self) -> bool:
        return self.primary is not None

    def verify(self, raw_body: Optional[bytes], signature_header: Optional[str]) -> SignatureCheck:
        return verify_signature(raw_body, signature_header, [self.primary, self.secondary])
