"""
Versioned one-way derivations of API key secrets.

Formats:
    v2:<saltHex>:<digestHex>   PBKDF2-HMAC-SHA256, 10000 iterations, 64 byte digest
    v1:<hex>                   single SHA-256 over secret + server secret
    <hex>                      legacy, same derivation as v1 without the tag

The v2 salt is derived from the secret itself so the same secret always
yields the same hash; that is what lets validation look keys up by hash.
Only v2 is ever produced for new keys. v1/legacy are verified solely to
accept hashes that are already stored.
"""

import hashlib
import hmac
import logging
from typing import List

logger = logging.getLogger(__name__)

CURRENT_VERSION = "v2"
V2_ITERATIONS = 10000
V2_DIGEST_LENGTH = 64
V2_SALT_CONTEXT = "v2_salt_"


class HashEngine:
    """Computes and verifies versioned API key hashes."""

    def __init__(self, server_secret: str, iterations: int = V2_ITERATIONS):
        """
        Initialize hash engine.

        Args:
            server_secret: Server-wide secret mixed into every derivation
            iterations: PBKDF2 iteration count for the current format
        """
        if not server_secret:
            raise ValueError("HashEngine requires a non-empty server secret")
        self._server_secret = server_secret
        self._iterations = iterations

    def _salt(self, secret: str) -> bytes:
        return hashlib.sha256(
            f"{secret}{V2_SALT_CONTEXT}{self._server_secret}".encode("utf-8")
        ).digest()

    def _derive_v2(self, secret: str, salt: bytes) -> bytes:
        return hashlib.pbkdf2_hmac(
            "sha256", secret.encode("utf-8"), salt, self._iterations, V2_DIGEST_LENGTH
        )

    def hash(self, secret: str) -> str:
        """Hash a secret in the current (v2) format."""
        salt = self._salt(secret)
        digest = self._derive_v2(secret, salt)
        return f"{CURRENT_VERSION}:{salt.hex()}:{digest.hex()}"

    def hash_legacy(self, secret: str) -> str:
        """Untagged legacy hash. Used only to look up already-stored keys."""
        return hashlib.sha256(f"{secret}{self._server_secret}".encode("utf-8")).hexdigest()

    def legacy_candidates(self, secret: str) -> List[str]:
        """Index values under which a legacy-hashed key may have been stored."""
        legacy = self.hash_legacy(secret)
        return [legacy, f"v1:{legacy}"]

    @staticmethod
    def version_of(stored_hash: str) -> str:
        if stored_hash.startswith("v2:"):
            return "v2"
        if stored_hash.startswith("v1:"):
            return "v1"
        return "legacy"

    @staticmethod
    def is_current(stored_hash: str) -> bool:
        return stored_hash.startswith(f"{CURRENT_VERSION}:")

    @staticmethod
    def secure_compare(a: str, b: str) -> bool:
        """Length check, then constant-time comparison over the matched length."""
        if len(a) != len(b):
            return False
        return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))

    def verify(self, secret: str, stored_hash: str) -> bool:
        """
        Verify a secret against a stored hash of any supported version.

        Returns:
            True if the secret matches; False on mismatch or malformed input
        """
        try:
            version = self.version_of(stored_hash)
            if version == "v2":
                return self._verify_v2(secret, stored_hash)
            if version == "v1":
                return self.secure_compare(self.hash_legacy(secret), stored_hash[3:])
            return self.secure_compare(self.hash_legacy(secret), stored_hash)
        except Exception as e:
            logger.error(f"API key hash verification error: {e}")
            return False

    def _verify_v2(self, secret: str, stored_hash: str) -> bool:
        parts = stored_hash.split(":")
        if len(parts) != 3:
            return False
        _, salt_hex, digest_hex = parts
        try:
            salt = bytes.fromhex(salt_hex)
        except ValueError:
            return False

        computed = self._derive_v2(secret, salt).hex()
        return self.secure_compare(computed, digest_hex)
