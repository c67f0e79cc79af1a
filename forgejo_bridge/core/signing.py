"""HMAC-SHA256 webhook signatures"""

import hashlib
import hmac
from typing import Optional

from forgejo_bridge.infrastructure.logging import get_logger

logger = get_logger(__name__)

SIGNATURE_PREFIX = "sha256="


def compute_signature(secret: str, payload: bytes) -> str:
    """Hex HMAC-SHA256 of the raw payload"""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_signature(secret: str, payload: bytes, signature: Optional[str]) -> bool:
    """Check a delivery signature.

    Forgejo and Gitea send the bare hex digest; GitHub-style senders prefix it
    with ``sha256=``. Both forms are accepted.
    """
    if not signature:
        return False

    provided = signature.strip()
    if provided.startswith(SIGNATURE_PREFIX):
        provided = provided[len(SIGNATURE_PREFIX):]

    expected = compute_signature(secret, payload)
    try:
        return hmac.compare_digest(provided.lower(), expected)
    except TypeError:
        # compare_digest refuses non-ASCII str input
        logger.warning("signature_verification_error", reason="non_ascii_signature")
        return False
