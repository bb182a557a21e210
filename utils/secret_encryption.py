"""
Secret Encryption Service
Fernet encryption at rest for MFA shared secrets
"""

import logging
import os
from typing import Optional, Union

from cryptography.fernet import Fernet, InvalidToken

from config import Config

logger = logging.getLogger(__name__)


class SecretDecryptionError(Exception):
    """Stored ciphertext could not be decrypted with the configured key"""
    pass


class SecretCipher:
    """Encrypts and decrypts short secrets with a Fernet key"""

    def __init__(self, key: Optional[Union[str, bytes]] = None):
        self.fernet = Fernet(self._resolve_key(key))

    @staticmethod
    def _resolve_key(key: Optional[Union[str, bytes]]) -> bytes:
        key = key or Config.MFA_ENCRYPTION_KEY
        if key:
            return key.encode("ascii") if isinstance(key, str) else key

        if Config.IS_PRODUCTION:
            raise ValueError("MFA_ENCRYPTION_KEY must be configured in production")

        # Development only: secrets encrypted with this key do not survive a restart
        logger.warning("⚠️ Generating ephemeral MFA encryption key - set MFA_ENCRYPTION_KEY to persist secrets")
        generated = Fernet.generate_key()
        os.environ["MFA_ENCRYPTION_KEY"] = generated.decode("ascii")
        Config.MFA_ENCRYPTION_KEY = generated.decode("ascii")
        return generated

    def encrypt(self, plaintext: str) -> str:
        if not plaintext:
            raise ValueError("Refusing to encrypt an empty secret")
        return self.fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        try:
            return self.fernet.decrypt(ciphertext.encode("ascii")).decode("utf-8")
        except InvalidToken as e:
            logger.error("❌ MFA secret decryption failed - key mismatch or corrupted ciphertext")
            raise SecretDecryptionError("Stored MFA secret could not be decrypted") from e
