"""
Token generation and hashing.

Token format: <prefix>_<environment>_<random>, e.g. sk_live_3f9a...
- random: 16 bytes (128 bits) from the OS CSPRNG, hex encoded
- keyId: independent of the secret, safe to log and display
- digest: HMAC-SHA256 of the full token keyed by the process-wide salt
"""
import hashlib
import hmac
import secrets
import time
from typing import Iterable, Optional, Tuple

from apikey_service.config import KEY_ENVIRONMENTS
from apikey_service.errors import ConfigurationError

RANDOM_BYTES = 16
DISPLAY_PREFIX_LENGTH = 12
SEGMENT_SEPARATOR = "_"


class TokenCodec:
    """Generate opaque tokens and their storable digests."""

    def __init__(
        self,
        salt: str,
        prefix: str = "sk",
        environment: str = "test",
        environments: Iterable[str] = KEY_ENVIRONMENTS,
    ):
        """
        Args:
            salt: Server-side HMAC secret; must not change for existing keys
            prefix: Leading token segment
            environment: Environment tag stamped into new tokens
            environments: Environment tags accepted on validation
        """
        if not salt:
            raise ConfigurationError("API key salt is not configured")
        self.environments = tuple(environments)
        if environment not in self.environments:
            raise ConfigurationError(f"Unknown key environment: {environment}")
        self._salt = salt.encode()
        self.prefix = prefix
        self.environment = environment

    @classmethod
    def from_settings(cls, settings) -> "TokenCodec":
        return cls(
            salt=settings.api_key_salt,
            prefix=settings.api_key_prefix,
            environment=settings.key_environment,
        )

    def generate(self, environment: Optional[str] = None) -> Tuple[str, str]:
        """
        Generate a new token.

        Returns:
            Tuple of (plaintext, key_id)
        """
        environment = environment or self.environment
        if environment not in self.environments:
            raise ConfigurationError(f"Unknown key environment: {environment}")
        random_part = secrets.token_hex(RANDOM_BYTES)
        plaintext = SEGMENT_SEPARATOR.join([self.prefix, environment, random_part])
        return plaintext, self.generate_key_id()

    @staticmethod
    def generate_key_id() -> str:
        """Generate a non-secret key identifier."""
        return f"key_{int(time.time() * 1000)}_{secrets.token_hex(8)}"

    def hash(self, plaintext: str) -> str:
        """Deterministic keyed digest of a token."""
        return hmac.new(self._salt, plaintext.encode(), hashlib.sha256).hexdigest()

    def verify(self, plaintext: str, digest: str) -> bool:
        """Constant-time comparison of a token against a stored digest."""
        return hmac.compare_digest(self.hash(plaintext), digest)

    @staticmethod
    def display_prefix(plaintext: str) -> str:
        """Short fragment for UI identification, e.g. 'sk_test_a1b2...'."""
        return plaintext[:DISPLAY_PREFIX_LENGTH] + "..."

    @property
    def random_length(self) -> int:
        """Hex length of the random segment."""
        return RANDOM_BYTES * 2
