"""State and PKCE (RFC 7636) value generation.

All randomness comes from :mod:`secrets`; the S256 transform uses
:mod:`hashlib`. Values are URL-safe base64 without padding.
"""

import base64
import hashlib
import secrets

from .models import PKCEPair

# 32 bytes = 256 bits of entropy, 43 characters once encoded
RANDOM_BYTES = 32


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def generate_state() -> str:
    """Generate an opaque anti-forgery state value."""
    return _b64url(secrets.token_bytes(RANDOM_BYTES))


def generate_code_verifier() -> str:
    return _b64url(secrets.token_bytes(RANDOM_BYTES))


def compute_code_challenge(verifier: str) -> str:
    """S256 challenge: BASE64URL(SHA256(ASCII(verifier))) with no padding."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return _b64url(digest)


def generate_pkce_pair() -> PKCEPair:
    verifier = generate_code_verifier()
    return PKCEPair(verifier=verifier, challenge=compute_code_challenge(verifier))
