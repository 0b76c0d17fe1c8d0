"""Encryption of customer credentials, at rest and for the payment provider"""

import base64
import hashlib
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.decrepit.ciphers.algorithms import TripleDES
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, modes

from trustrail.config import settings
from trustrail.domain.exceptions import ConfigurationError

ZERO_IV = bytes(8)


def _fernet(key: Optional[str]) -> Fernet:
    key = key or settings.encryption_key
    if not key:
        raise ConfigurationError("ENCRYPTION_KEY is not configured")
    return Fernet(key.encode() if isinstance(key, str) else key)


def encrypt_at_rest(value: str, key: Optional[str] = None) -> str:
    """Fernet token for BVN / account number columns"""
    return _fernet(key).encrypt(value.encode("utf-8")).decode("ascii")


def decrypt_at_rest(token: str, key: Optional[str] = None) -> str:
    try:
        return _fernet(key).decrypt(token.encode("ascii")).decode("utf-8")
    except InvalidToken as e:
        raise ConfigurationError("Stored credential cannot be decrypted with the configured key") from e


def _provider_key(client_secret: str) -> bytes:
    # 16-byte MD5 digest of the UTF-16LE secret, extended to 24 bytes with its first 8
    digest = hashlib.md5(client_secret.encode("utf-16-le")).digest()
    return digest + digest[:8]


def encrypt_for_provider(plain_text: str, client_secret: Optional[str] = None) -> str:
    """
    TripleDES-CBC with a zero IV and PKCS7 padding, base64 encoded.

    This is the format the provider expects for `auth.secure` and the BVN.
    """
    secret = client_secret if client_secret is not None else settings.provider_client_secret
    padder = padding.PKCS7(64).padder()
    padded = padder.update(plain_text.encode("utf-8")) + padder.finalize()
    encryptor = Cipher(TripleDES(_provider_key(secret)), modes.CBC(ZERO_IV)).encryptor()
    return base64.b64encode(encryptor.update(padded) + encryptor.finalize()).decode("ascii")


def decrypt_from_provider(cipher_text: str, client_secret: Optional[str] = None) -> str:
    secret = client_secret if client_secret is not None else settings.provider_client_secret
    decryptor = Cipher(TripleDES(_provider_key(secret)), modes.CBC(ZERO_IV)).decryptor()
    padded = decryptor.update(base64.b64decode(cipher_text)) + decryptor.finalize()
    unpadder = padding.PKCS7(64).unpadder()
    return (unpadder.update(padded) + unpadder.finalize()).decode("utf-8")


def encrypt_account_credentials(account_number: str, bank_code: str, client_secret: Optional[str] = None) -> str:
    return encrypt_for_provider(f"{account_number};{bank_code}", client_secret)


def encrypt_bvn(bvn: str, client_secret: Optional[str] = None) -> str:
    return encrypt_for_provider(bvn, client_secret)
