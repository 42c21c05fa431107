"""
Cryptographic utilities for the federation service.

This module provides:
- Opaque token generation for codes, access/refresh tokens and SSO handoffs
- Client secret hashing (bcrypt via passlib)
- Token digests for storage and lookup
- PKCE challenge generation and verification
- HMAC signing for webhook payloads
"""

import base64
import hashlib
import hmac
import logging
import secrets

from authlib.common.security import generate_token
from passlib.context import CryptContext

logger = logging.getLogger(__name__)

# Client secret hashing context
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

SUPPORTED_PKCE_METHODS = ("S256", "plain")
PKCE_VERIFIER_MIN_LENGTH = 43
PKCE_VERIFIER_MAX_LENGTH = 128


def generate_opaque_token(length: int) -> str:
    """Generate a URL-safe random token of the given length."""
    return generate_token(length)


def generate_client_id() -> str:
    return f"client_{secrets.token_urlsafe(16)}"


def generate_client_secret() -> str:
    return secrets.token_urlsafe(48)


class ClientSecretHasher:
    """Client secret hashing utilities using bcrypt (no strength validation)."""

    @staticmethod
    def hash_secret(secret: str) -> str:
        """Hash a client secret without validation."""
        return pwd_context.hash(secret)

    @staticmethod
    def verify_secret(plain_secret: str, hashed_secret: str) -> bool:
        """Verify a client secret against its hash."""
        if not plain_secret or not hashed_secret:
            return False
        try:
            return pwd_context.verify(plain_secret, hashed_secret)
        except ValueError:
            logger.warning("Stored client secret hash is malformed")
            return False


class TokenHasher:
    """SHA-256 digests of opaque tokens, used as the stored lookup key."""

    @staticmethod
    def hash_token(token: str) -> str:
        """
        Hash a token using SHA-256 for storage.

        Args:
            token: The token to hash

        Returns:
            str: Hexadecimal hash of the token
        """
        if not token:
            raise ValueError("Token cannot be empty")
        return hashlib.sha256(token.encode("utf-8")).hexdigest()


class PKCEHandler:
    """PKCE utilities for OAuth 2.0."""

    @staticmethod
    def generate_code_verifier(length: int = 64) -> str:
        """Generate PKCE code verifier (RFC 7636 allows 43 to 128 characters)."""
        if length < PKCE_VERIFIER_MIN_LENGTH or length > PKCE_VERIFIER_MAX_LENGTH:
            raise ValueError(f"Code verifier length must be between {PKCE_VERIFIER_MIN_LENGTH} and {PKCE_VERIFIER_MAX_LENGTH}")
        return secrets.token_urlsafe(length)[:length]

    @staticmethod
    def generate_code_challenge(code_verifier: str) -> str:
        """Generate S256 PKCE code challenge from verifier."""
        sha256_hash = hashlib.sha256(code_verifier.encode('utf-8')).digest()
        return base64.urlsafe_b64encode(sha256_hash).decode('utf-8').rstrip('=')

    @staticmethod
    def verify(code_verifier: str, code_challenge: str, method: str = "S256") -> bool:
        """Check a verifier against the stored challenge in constant time."""
        if not code_verifier or not code_challenge:
            return False
        if method == "S256":
            computed = PKCEHandler.generate_code_challenge(code_verifier)
        elif method == "plain":
            computed = code_verifier
        else:
            return False
        return hmac.compare_digest(computed, code_challenge)


def hmac_sha256_hex(secret: str, message: str) -> str:
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()
