"""PKCE (Proof Key for Code Exchange) and anti-replay values for OAuth 2.1."""

import base64
import hashlib
import secrets

PKCE_METHOD_S256 = "S256"


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b'=').decode('utf-8')


def generate_code_challenge(code_verifier: str) -> str:
    """S256 challenge: base64url(SHA-256(verifier)) without padding."""
    return _b64url(hashlib.sha256(code_verifier.encode('utf-8')).digest())


def generate_pkce_pair() -> tuple[str, str]:
    """
    Generate PKCE code_verifier and code_challenge pair.

    Returns:
        Tuple of (code_verifier, code_challenge) using S256 method.
    """
    # 32 random bytes encode to a 43 character verifier (RFC 7636 allows 43-128)
    code_verifier = _b64url(secrets.token_bytes(32))
    return code_verifier, generate_code_challenge(code_verifier)


def generate_state() -> str:
    """Random state parameter for CSRF protection."""
    return secrets.token_urlsafe(32)


def generate_nonce() -> str:
    """Random OIDC nonce binding the ID token to this authorization request."""
    return secrets.token_urlsafe(32)
