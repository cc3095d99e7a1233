"""
Webhook signature validation - verify incoming GHL webhooks are authentic.

GHL signs the raw request body with its RSA private key (SHA-256, PKCS#1 v1.5)
and sends the base64 signature in x-wh-signature. We verify against the
marketplace public key from settings.
"""
import base64
import binascii
import hashlib
import logging
from functools import lru_cache
from typing import Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-wh-signature"


@lru_cache(maxsize=4)
def _load_public_key(pem: str) -> rsa.RSAPublicKey:
    # Env vars often carry the PEM with literal "\n"
    normalized = pem.replace("\\n", "\n").strip()
    return serialization.load_pem_public_key(normalized.encode("utf-8"))


def validate_ghl_signature(public_key_pem: str, signature: Optional[str], body: bytes) -> bool:
    """
    Validate an RSA-SHA256 GHL webhook signature.
    Returns True if valid, False if invalid or on error.
    """
    if not public_key_pem or not signature:
        return False

    try:
        sig_bytes = base64.b64decode(signature, validate=True)
    except (binascii.Error, ValueError):
        logger.warning("GHL signature is not valid base64")
        return False

    try:
        key = _load_public_key(public_key_pem)
        key.verify(sig_bytes, body, padding.PKCS1v15(), hashes.SHA256())
        return True
    except InvalidSignature:
        return False
    except (ValueError, TypeError) as e:
        logger.error("GHL signature validation error: %s", str(e))
        return False


def compute_payload_hash(body: bytes) -> str:
    """Compute SHA-256 hash of raw payload for logging."""
    return hashlib.sha256(body).hexdigest()
