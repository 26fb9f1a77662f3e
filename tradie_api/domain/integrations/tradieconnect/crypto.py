"""
TradieConnect credential encryption

Two AES-256-CBC transforms share the same 32 byte key:

- At-rest storage: random 16 byte IV per value, stored as ``base64(iv):base64(ciphertext)``
- SSO callback parameters: all-zero IV, Base64 with ``+`` -> ``||||`` and ``/`` -> ``____``
  and the padding stripped. TradieConnect encodes its callback this way, so this transform
  is only ever used for inbound parameters and the outbound referer, never for storage.
"""

import base64
import binascii
import logging
import os
from typing import Optional

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from ....config import TRADIECONNECT_ENCRYPT_KEY
from .exceptions import DecryptionError, TradieConnectNotConfigured

logger = logging.getLogger(__name__)

IV_LENGTH = 16
ZERO_IV = bytes(IV_LENGTH)
STORAGE_SEPARATOR = ":"


class CredentialVault:
    """Encrypts and decrypts TradieConnect tokens"""

    def __init__(self, key: Optional[str] = None):
        key = TRADIECONNECT_ENCRYPT_KEY if key is None else key
        if not key:
            raise TradieConnectNotConfigured("TRADIECONNECT_ENCRYPT_KEY is not configured")

        key_bytes = key.encode("utf-8")
        if len(key_bytes) != 32:
            raise TradieConnectNotConfigured(
                f"TRADIECONNECT_ENCRYPT_KEY must be 32 bytes for AES-256, got {len(key_bytes)}"
            )
        self._key = key_bytes

    # ------------------------------------------------------------------
    # AES-256-CBC primitives
    # ------------------------------------------------------------------

    def _encrypt_bytes(self, plaintext: str, iv: bytes) -> bytes:
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
        encryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).encryptor()
        return encryptor.update(padded) + encryptor.finalize()

    def _decrypt_bytes(self, ciphertext: bytes, iv: bytes) -> str:
        if not ciphertext or len(ciphertext) % IV_LENGTH != 0:
            raise DecryptionError("Ciphertext length is not a multiple of the AES block size")

        decryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()

        try:
            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            data = unpadder.update(padded) + unpadder.finalize()
            return data.decode("utf-8")
        except (ValueError, UnicodeDecodeError) as e:
            # Bad padding or garbage output: wrong key or tampered value
            raise DecryptionError("Unable to decrypt value") from e

    # ------------------------------------------------------------------
    # At-rest storage
    # ------------------------------------------------------------------

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a token for storage in the database"""
        iv = os.urandom(IV_LENGTH)
        ciphertext = self._encrypt_bytes(plaintext, iv)
        return (
            base64.b64encode(iv).decode("ascii")
            + STORAGE_SEPARATOR
            + base64.b64encode(ciphertext).decode("ascii")
        )

    def decrypt(self, stored: str) -> str:
        """Decrypt a token previously produced by encrypt()"""
        if not stored or STORAGE_SEPARATOR not in stored:
            raise DecryptionError("Stored value is not in iv:ciphertext format")

        iv_b64, ciphertext_b64 = stored.split(STORAGE_SEPARATOR, 1)
        try:
            iv = base64.b64decode(iv_b64, validate=True)
            ciphertext = base64.b64decode(ciphertext_b64, validate=True)
        except (binascii.Error, ValueError) as e:
            raise DecryptionError("Stored value is not valid base64") from e

        if len(iv) != IV_LENGTH:
            raise DecryptionError(f"Stored IV must be {IV_LENGTH} bytes, got {len(iv)}")

        return self._decrypt_bytes(ciphertext, iv)

    # ------------------------------------------------------------------
    # SSO URL parameters
    # ------------------------------------------------------------------

    def decrypt_url_parameter(self, value: str) -> str:
        """Decrypt a parameter from the TradieConnect SSO callback"""
        if not value:
            raise DecryptionError("Empty callback parameter")

        b64 = value.replace("||||", "+").replace("____", "/")
        remainder = len(b64) % 4
        if remainder == 2:
            b64 += "=="
        elif remainder == 3:
            b64 += "="

        try:
            ciphertext = base64.b64decode(b64, validate=True)
        except (binascii.Error, ValueError) as e:
            raise DecryptionError("Callback parameter is not valid base64") from e

        return self._decrypt_bytes(ciphertext, ZERO_IV)

    def encrypt_url_parameter(self, value: str) -> str:
        """Encrypt a value the way TradieConnect expects URL parameters"""
        encrypted = base64.b64encode(self._encrypt_bytes(value, ZERO_IV)).decode("ascii")
        return encrypted.rstrip("=").replace("+", "||||").replace("/", "____")


def basic_auth_header(tc_user_id: str, access_token: str) -> str:
    """Basic auth header for TradieConnect API calls (user GUID : access token)"""
    credentials = f"{tc_user_id}:{access_token}"
    return f"Basic {base64.b64encode(credentials.encode('utf-8')).decode('ascii')}"


def get_credential_vault() -> CredentialVault:
    """Dependency provider for the configured vault"""
    return CredentialVault()
