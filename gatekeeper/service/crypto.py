from __future__ import annotations

import hashlib
import hmac
import re
import secrets
import string
from typing import List, Optional

from argon2 import PasswordHasher as Argon2Hasher, Type
from argon2.exceptions import HashingError as Argon2HashingError
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from gatekeeper.logging import get_logger
from gatekeeper.service.errors import (
    DecryptionError,
    EncryptionError,
    HashingError,
    InvalidHashFormat,
)

logger = get_logger(__name__)

# Envelope layout: salt(64):iv(16):ciphertext(n):tag(16), lowercase hex
SALT_BYTES = 64
IV_BYTES = 16
TAG_BYTES = 16
KEY_BYTES = 32
KDF_ITERATIONS = 100_000

TOKEN_ALPHABET = string.ascii_letters + string.digits
SPECIAL_CHARACTERS = "!@#$%^&*()_+-=[]{};':\"\\|,.<>/?"

_HEX_SEGMENT = re.compile(r"^[0-9a-f]+$")


class PasswordHasher:
    """Adaptive salted password hashing (argon2id).

    Injected into the services that need it rather than imported ad hoc, so
    the auth flow, MFA backup codes, and password history all share one
    work-factor policy.
    """

    algorithm = "argon2id"

    def __init__(self, *, time_cost: int = 3, memory_cost: int = 65536, parallelism: int = 4):
        self._hasher = Argon2Hasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        self._dummy_hash: Optional[str] = None

    def hash(self, plain: str) -> str:
        try:
            return self._hasher.hash(plain)
        except Argon2HashingError as exc:
            raise HashingError("password hashing failed") from exc

    def verify(self, plain: str, digest: str) -> bool:
        """Return False on mismatch; raise InvalidHashFormat only for malformed digests."""
        if not digest or not digest.startswith("$argon2"):
            raise InvalidHashFormat("unrecognised password hash format")
        try:
            return self._hasher.verify(digest, plain)
        except VerifyMismatchError:
            return False
        except InvalidHash as exc:
            raise InvalidHashFormat("malformed password hash") from exc
        except VerificationError:
            return False

    def dummy_verify(self, plain: str) -> None:
        """Burn one verification so unknown identities cost the same as known ones."""
        if self._dummy_hash is None:
            self._dummy_hash = self.hash(random_token(32))
        self.verify(plain, self._dummy_hash)


class FieldCipher:
    """Authenticated encryption of single field values (AES-256-GCM).

    A fresh salt and IV are drawn for every call and the cipher key is
    derived from the master secret with PBKDF2, so the master secret never
    reaches the cipher directly and identical plaintexts never produce
    comparable envelopes.
    """

    def __init__(self, master_key: Optional[str]):
        self._master_key = master_key.encode("utf-8") if master_key else None

    @property
    def configured(self) -> bool:
        return self._master_key is not None

    def _derive_key(self, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA512(),
            length=KEY_BYTES,
            salt=salt,
            iterations=KDF_ITERATIONS,
        )
        return kdf.derive(self._master_key)

    def encrypt(self, plaintext: str) -> str:
        if not self._master_key:
            raise EncryptionError("field encryption key is not configured")
        if is_encrypted(plaintext):
            raise EncryptionError("value is already encrypted")
        salt = secrets.token_bytes(SALT_BYTES)
        iv = secrets.token_bytes(IV_BYTES)
        sealed = AESGCM(self._derive_key(salt)).encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
        return ":".join(part.hex() for part in (salt, iv, ciphertext, tag))

    def decrypt(self, envelope: str) -> str:
        if not self._master_key:
            raise DecryptionError("field encryption key is not configured")
        if not is_encrypted(envelope):
            raise DecryptionError("malformed envelope")
        salt_hex, iv_hex, ct_hex, tag_hex = envelope.split(":")
        if not all(_HEX_SEGMENT.match(part) for part in (salt_hex, iv_hex, ct_hex, tag_hex)):
            raise DecryptionError("malformed envelope")
        salt, iv, ciphertext, tag = (
            bytes.fromhex(salt_hex),
            bytes.fromhex(iv_hex),
            bytes.fromhex(ct_hex),
            bytes.fromhex(tag_hex),
        )
        if len(salt) != SALT_BYTES or len(iv) != IV_BYTES or len(tag) != TAG_BYTES:
            raise DecryptionError("malformed envelope")
        try:
            plain = AESGCM(self._derive_key(salt)).decrypt(iv, ciphertext + tag, None)
        except InvalidTag as exc:
            raise DecryptionError("authentication tag mismatch") from exc
        return plain.decode("utf-8")


def is_encrypted(value: Optional[str]) -> bool:
    """Structural check only: exactly four non-empty colon-separated segments."""
    if not isinstance(value, str):
        return False
    parts = value.split(":")
    return len(parts) == 4 and all(parts)


def random_token(length: int = 32) -> str:
    return "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(length))


def random_otp(length: int = 6) -> str:
    return "".join(secrets.choice(string.digits) for _ in range(length))


def sha256_hex(value: str) -> str:
    """Deterministic digest for high-entropy bearer values (refresh/reset tokens)."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def constant_time_equals(left: Optional[str], right: Optional[str]) -> bool:
    if left is None or right is None:
        return False
    return hmac.compare_digest(left.encode("utf-8"), right.encode("utf-8"))


def validate_password_strength(password: str, *, min_length: int = 12) -> List[str]:
    """Return every violated rule; an empty list means the password is acceptable."""
    errors: List[str] = []
    if len(password) < min_length:
        errors.append(f"Password must be at least {min_length} characters long")
    if not re.search(r"[A-Z]", password):
        errors.append("Password must contain at least one uppercase letter")
    if not re.search(r"[a-z]", password):
        errors.append("Password must contain at least one lowercase letter")
    if not re.search(r"\d", password):
        errors.append("Password must contain at least one number")
    if not any(ch in SPECIAL_CHARACTERS for ch in password):
        errors.append("Password must contain at least one special character")
    return errors
