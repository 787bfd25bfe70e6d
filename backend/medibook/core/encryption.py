"""Field-level encryption for sensitive booking and document attributes."""

from __future__ import annotations

import base64
from collections.abc import Iterable, Mapping
from typing import Any

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from medibook.core.settings import settings

_ENCRYPTED_PREFIX = "enc:"
_KEY_SALT = b"medibook-encryption-salt"

BOOKING_ENCRYPTED_FIELDS = ("notes", "internal_notes")
REFERRER_ENCRYPTED_FIELDS = ("first_name", "last_name", "email", "phone", "job_title")
EXAMINEE_ENCRYPTED_FIELDS = (
    "first_name",
    "last_name",
    "date_of_birth",
    "address",
    "email",
    "phone_number",
    "condition",
    "case_type",
)
DOCUMENT_ENCRYPTED_FIELDS = ("storage_key", "file_name", "description")


class EncryptionConfigError(RuntimeError):
    pass


class FieldDecodeError(ValueError):
    pass


def derive_fernet_key(secret: str) -> bytes:
    kdf = Scrypt(salt=_KEY_SALT, length=32, n=2**14, r=8, p=1)
    return base64.urlsafe_b64encode(kdf.derive(secret.encode("utf-8")))


class FieldCodec:
    """Encrypts single attribute values; every call to encode uses a fresh IV."""

    def __init__(self, secret: str) -> None:
        if not secret:
            raise EncryptionConfigError(
                "ENCRYPTION_KEY not configured; sensitive fields cannot be read or written."
            )
        self._fernet = Fernet(derive_fernet_key(secret))

    def encode(self, plaintext: str | None) -> str | None:
        if plaintext is None:
            return None
        if not isinstance(plaintext, str):
            plaintext = str(plaintext)
        if plaintext == "":
            return ""
        token = self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")
        return f"{_ENCRYPTED_PREFIX}{token}"

    def decode(self, ciphertext: str | None) -> str | None:
        if ciphertext is None:
            return None
        if ciphertext == "":
            return ""
        if not ciphertext.startswith(_ENCRYPTED_PREFIX):
            raise FieldDecodeError("Encrypted data is missing prefix")
        token = ciphertext[len(_ENCRYPTED_PREFIX) :]
        try:
            return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError) as exc:
            raise FieldDecodeError("Invalid or corrupted encrypted data") from exc

    def encode_fields(self, values: Mapping[str, Any], fields: Iterable[str]) -> dict[str, Any]:
        result = dict(values)
        for field in fields:
            if field in result:
                result[field] = self.encode(result[field])
        return result

    def decode_fields(self, values: Mapping[str, Any], fields: Iterable[str]) -> dict[str, Any]:
        result = dict(values)
        for field in fields:
            if field not in result:
                continue
            try:
                result[field] = self.decode(result[field])
            except FieldDecodeError as exc:
                raise FieldDecodeError(f"Failed to decrypt field {field}: {exc}") from exc
        return result


_codec: FieldCodec | None = None


def get_field_codec() -> FieldCodec:
    global _codec
    if _codec is None:
        _codec = FieldCodec(settings.encryption_key or "")
    return _codec
