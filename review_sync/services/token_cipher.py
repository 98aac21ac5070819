"""
Token encryption service for OAuth secrets at rest
"""
import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from ..config import get_review_sync_settings

logger = logging.getLogger(__name__)


class TokenCipher:
    """
    Encrypts and decrypts OAuth tokens for secure storage
    """

    def __init__(self, key: Optional[str] = None):
        key = key or get_review_sync_settings().token_encryption_key

        if not key:
            # Tokens written with a generated key are unreadable after restart
            logger.warning("No TOKEN_ENCRYPTION_KEY found, generating a temporary one")
            key = Fernet.generate_key().decode()

        self.cipher = Fernet(key.encode() if isinstance(key, str) else key)

    def encrypt(self, token: str) -> str:
        """
        Encrypt a token

        Args:
            token: Plain token

        Returns:
            Encrypted string
        """
        return self.cipher.encrypt(token.encode()).decode()

    def decrypt(self, encrypted_token: str) -> str:
        """
        Decrypt a token

        Args:
            encrypted_token: Encrypted token string

        Returns:
            Plain token

        Raises:
            ValueError: If the token was encrypted with a different key
        """
        try:
            return self.cipher.decrypt(encrypted_token.encode()).decode()
        except InvalidToken as e:
            logger.error("Error decrypting token: key mismatch or corrupted value")
            raise ValueError("Stored token could not be decrypted") from e

    @staticmethod
    def generate_key() -> str:
        """
        Generate a new encryption key

        Returns:
            Base64-encoded encryption key
        """
        return Fernet.generate_key().decode()


# Singleton instance
_token_cipher: Optional[TokenCipher] = None


def get_token_cipher() -> TokenCipher:
    """Get or create the token cipher singleton."""
    global _token_cipher
    if _token_cipher is None:
        _token_cipher = TokenCipher()
    return _token_cipher
