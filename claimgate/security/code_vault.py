"""
code_vault.py — Private Plugin Parameter Encryption + Code Chains

Encrypts secret plugin parameters (passwords, codes, seed codes) at rest
with AES-256-CBC. The AES key is derived once from the process secret using
PBKDF2-HMAC-SHA256 and held on the vault instance only.

Code chains:
  code[0] = SHA256(seed + seed)
  code[i] = SHA256(code[i-1] + seed)
Regenerating from (seed, count) always yields the same sequence, so only the
encrypted seed is stored for N one-time codes.
"""

import base64
import binascii
import hashlib
import logging
import os
from typing import List

from Crypto.Cipher import AES
from Crypto.Util.Padding import pad, unpad

from claimgate.errors import ConfigurationError

logger = logging.getLogger(__name__)

# =========================================================================
# CONFIGURATION
# =========================================================================

PBKDF2_ITERATIONS = 200_000
KEY_LENGTH = 32  # AES-256
IV_LENGTH = 16
KDF_SALT = b"claimgate.code_vault.v1"


# =========================================================================
# CODE CHAIN
# =========================================================================

def generate_codes(seed_code: str, num_codes: int) -> List[str]:
    """Deterministically expand a seed into num_codes one-time codes."""
    if num_codes < 0:
        raise ValueError("num_codes must be non-negative")
    codes = []
    curr = seed_code
    for _ in range(num_codes):
        curr = hashlib.sha256((curr + seed_code).encode("utf-8")).hexdigest()
        codes.append(curr)
    return codes


# =========================================================================
# VAULT
# =========================================================================

def derive_vault_key(secret: str, iterations: int = PBKDF2_ITERATIONS) -> bytes:
    """Derive the 32-byte AES key from the configured secret."""
    if not secret:
        raise ConfigurationError("No symmetric key found")
    return hashlib.pbkdf2_hmac(
        "sha256",
        secret.encode("utf-8"),
        KDF_SALT,
        iterations,
        dklen=KEY_LENGTH,
    )


class CodeVault:
    """Symmetric cipher for private plugin params.

    Ciphertexts are base64(iv || AES-CBC(pkcs7(plaintext))) strings so they
    can be stored in any JSON document store.
    """

    def __init__(self, secret: str, iterations: int = PBKDF2_ITERATIONS):
        self._key = derive_vault_key(secret, iterations)
        logger.info("[VAULT] Key derived (%d PBKDF2 iterations)", iterations)

    def encrypt(self, plaintext: str) -> str:
        iv = os.urandom(IV_LENGTH)
        cipher = AES.new(self._key, AES.MODE_CBC, iv)
        ct = cipher.encrypt(pad(plaintext.encode("utf-8"), AES.block_size))
        return base64.b64encode(iv + ct).decode("ascii")

    def decrypt(self, token: str) -> str:
        """Reverse encrypt().

        Raises:
            ConfigurationError: if the blob was not produced by this key.
        """
        try:
            raw = base64.b64decode(token.encode("ascii"), validate=True)
            iv, ct = raw[:IV_LENGTH], raw[IV_LENGTH:]
            cipher = AES.new(self._key, AES.MODE_CBC, iv)
            return unpad(cipher.decrypt(ct), AES.block_size).decode("utf-8")
        except (ValueError, binascii.Error, UnicodeDecodeError) as exc:
            # Wrong key or tampered blob; never echo the ciphertext.
            raise ConfigurationError(f"VAULT_DECRYPT_FAILED: {exc}") from exc

    def encrypt_many(self, values: List[str]) -> List[str]:
        return [self.encrypt(v) for v in values]

    def decrypt_many(self, values: List[str]) -> List[str]:
        return [self.decrypt(v) for v in values]
