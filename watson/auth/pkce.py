"""PKCE (Proof Key for Code Exchange) for the Google installed-app flow.

RFC 7636: https://www.rfc-editor.org/rfc/rfc7636

Google accepts PKCE from desktop clients. The verifier stays on this
machine; only its S256 challenge travels through the browser, so an
intercepted authorization code cannot be redeemed elsewhere.
"""

import base64
import hashlib
import secrets

__all__ = ["generate_pkce_pair", "compute_code_challenge"]


def generate_pkce_pair() -> tuple[str, str]:
    """Generate a (code_verifier, code_challenge) pair.

    The verifier is 32 random bytes in base64url (43 characters), inside
    the 43-128 character range the RFC allows.
    """
    code_verifier = secrets.token_urlsafe(32)
    return code_verifier, compute_code_challenge(code_verifier)


def compute_code_challenge(code_verifier: str) -> str:
    """BASE64URL(SHA256(code_verifier)) without padding."""
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
