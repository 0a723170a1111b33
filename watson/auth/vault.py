"""Authenticated encryption of credential payloads.

AES-256-GCM with a random 192-bit nonce per call and a 128-bit tag.
GCM derives the initial counter block from a longer nonce through GHASH,
so the extra bits do not buy collision margin over a random 96-bit nonce:
one key stays good for about 2**32 seals. Credentials are resealed only
when they change, far below that.
"""

import secrets
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..errors import IntegrityError, KeyUnavailable
from ..models import Provider
from .credentials import (
    CredentialPayload,
    EncryptedCredential,
    associated_data_for,
    payload_from_json,
)
from .master_key import MasterKey

__all__ = ["Vault", "SealedBox", "NONCE_SIZE", "TAG_SIZE"]

NONCE_SIZE = 24  # 192 bits
TAG_SIZE = 16


@dataclass(frozen=True)
class SealedBox:
    """Output of one encryption."""

    nonce: bytes
    ciphertext: bytes
    tag: bytes


class Vault:
    """Stateless AEAD over the master key."""

    def __init__(self, master_key: MasterKey):
        self._master_key = master_key

    @property
    def key_version(self) -> int:
        return self._master_key.version

    def _cipher(self) -> AESGCM:
        if self._master_key.wiped:
            raise KeyUnavailable("Master key has been cleared")
        return AESGCM(self._master_key.material())

    def encrypt(self, plaintext: bytes, associated_data: bytes) -> SealedBox:
        nonce = secrets.token_bytes(NONCE_SIZE)
        sealed = self._cipher().encrypt(nonce, plaintext, associated_data)
        return SealedBox(nonce=nonce, ciphertext=sealed[:-TAG_SIZE], tag=sealed[-TAG_SIZE:])

    def decrypt(
        self, nonce: bytes, ciphertext: bytes, tag: bytes, associated_data: bytes
    ) -> bytes:
        """Verify and decrypt. Raises IntegrityError on any mismatch."""
        if len(nonce) != NONCE_SIZE or len(tag) != TAG_SIZE:
            raise IntegrityError("Malformed nonce or tag")
        try:
            return self._cipher().decrypt(nonce, ciphertext + tag, associated_data)
        except InvalidTag:
            raise IntegrityError("Authentication tag verification failed") from None

    def seal_credential(
        self, label: str, provider: Provider, payload: CredentialPayload
    ) -> EncryptedCredential:
        """Encrypt a payload into a record bound to label, provider and key version."""
        version = self.key_version
        box = self.encrypt(
            payload.to_json().encode("utf-8"),
            associated_data_for(label, provider, version),
        )
        return EncryptedCredential(
            account_label=label,
            provider=provider,
            key_version=version,
            nonce=box.nonce,
            ciphertext=box.ciphertext,
            tag=box.tag,
        )

    def open_credential(self, record: EncryptedCredential) -> CredentialPayload:
        """Decrypt a record. Records from another key version fail closed."""
        plaintext = self.decrypt(
            record.nonce, record.ciphertext, record.tag, record.associated_data()
        )
        return payload_from_json(plaintext.decode("utf-8"))
