"""Decrypt-on-read / encrypt-on-write access to stored credentials."""

from ..errors import IntegrityError
from ..models import Provider
from .credential_store import CredentialStore
from .credentials import CredentialPayload
from .vault import Vault

__all__ = ["AccountCredentials"]


class AccountCredentials:
    """Pairs the vault with the store so callers only see plaintext payloads.

    Writes seal and store under the store's writer lock, so a key rotation
    can never interleave between encryption and the rename.
    """

    def __init__(self, store: CredentialStore, vault: Vault):
        self.store = store
        self.vault = vault

    def load(self, label: str) -> tuple[Provider, CredentialPayload]:
        """Decrypt the stored payload for ``label``.

        Raises:
            NotFound: No record for this label
            IntegrityError: Record fails verification
        """
        record = self.store.get(label)
        try:
            return record.provider, self.vault.open_credential(record)
        except IntegrityError:
            # A rotation swaps the in-memory key before promoting records;
            # once it releases the writer lock, key and records agree again.
            with self.store.write_lock():
                record = self.store.get(label)
                return record.provider, self.vault.open_credential(record)

    def save(self, label: str, provider: Provider, payload: CredentialPayload) -> None:
        """Encrypt ``payload`` and atomically replace the record."""
        with self.store.write_lock():
            self.store.put(label, self.vault.seal_credential(label, provider, payload))
