"""AES-256-GCM secret encryption/decryption.

Ciphertext layout: base64(iv[16] || tag[16] || ciphertext), key derived with
scrypt from the server secret and a fixed salt.
"""

import base64
import binascii
import os
from functools import lru_cache

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from agent_manager.config import settings
from agent_manager.errors import ConfigError, ValidationError

ENCRYPTION_KEY_SALT = b"opencode-ssh-key-salt-v1"
IV_LENGTH = 16
TAG_LENGTH = 16
KEY_LENGTH = 32


@lru_cache(maxsize=4)
def _derive_key(secret: str) -> bytes:
    kdf = Scrypt(salt=ENCRYPTION_KEY_SALT, length=KEY_LENGTH, n=2**14, r=8, p=1)
    return kdf.derive(secret.encode("utf-8"))


def _get_key() -> bytes:
    if not settings.secret_key:
        raise ConfigError("AGENT_MANAGER_SECRET_KEY must be configured for encryption")
    return _derive_key(settings.secret_key)


def encrypt(plaintext: str) -> str:
    iv = os.urandom(IV_LENGTH)
    sealed = AESGCM(_get_key()).encrypt(iv, plaintext.encode("utf-8"), None)
    # AESGCM appends the tag; the stored layout puts it before the ciphertext
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
    return base64.b64encode(iv + tag + ciphertext).decode("ascii")


def decrypt(ciphertext: str) -> str:
    try:
        combined = base64.b64decode(ciphertext, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValidationError("Invalid encrypted data format") from exc

    if len(combined) < IV_LENGTH + TAG_LENGTH:
        raise ValidationError("Invalid encrypted data format")

    iv = combined[:IV_LENGTH]
    tag = combined[IV_LENGTH:IV_LENGTH + TAG_LENGTH]
    body = combined[IV_LENGTH + TAG_LENGTH:]

    try:
        plaintext = AESGCM(_get_key()).decrypt(iv, body + tag, None)
    except InvalidTag as exc:
        raise ValidationError("Encrypted data failed authentication") from exc
    return plaintext.decode("utf-8")
