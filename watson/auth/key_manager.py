"""Master key lifecycle: create, load, rotate, clear.

The key lives in a single local file guarded only by filesystem
permissions (0600 in a 0700 directory) so background refresh can decrypt
credentials without user interaction. Anything running as the same user
can read it.
"""

import base64
import json
import logging
import os
import stat
from pathlib import Path
from typing import Optional

from ..errors import KeyUnavailable, StorageError
from .credential_store import CredentialStore, atomic_write
from .master_key import KEY_SIZE, MasterKey
from .vault import Vault

__all__ = ["KeyManager"]

logger = logging.getLogger(__name__)

KEY_FILE_NAME = "master.key"
PENDING_SUFFIX = ".pending"


class KeyManager:
    """Owns the master key file and the in-memory MasterKey."""

    def __init__(self, data_dir: Path):
        """Initialize key manager.

        Args:
            data_dir: Directory for the key file (created 0700)
        """
        self.data_dir = Path(data_dir)
        self.key_path = self.data_dir / KEY_FILE_NAME
        self.pending_path = self.data_dir / f"{KEY_FILE_NAME}{PENDING_SUFFIX}"
        self._master_key: Optional[MasterKey] = None

    @property
    def master_key(self) -> MasterKey:
        if self._master_key is None or self._master_key.wiped:
            raise KeyUnavailable("Master key is not loaded")
        return self._master_key

    def get_or_create_master_key(self, expect_existing: bool = False) -> MasterKey:
        """Load the master key, generating it on first run.

        Args:
            expect_existing: Credentials already exist on disk, so a missing
                key file means the key was lost rather than never created

        Raises:
            KeyUnavailable: Key file missing (when expected) or unreadable
        """
        if self._master_key is not None and not self._master_key.wiped:
            return self._master_key

        if self.key_path.exists():
            self._master_key = self._load()
            return self._master_key

        if expect_existing:
            raise KeyUnavailable(
                f"Key file {self.key_path} is missing but credentials exist; "
                "stored accounts must be set up again"
            )

        self._master_key = self._create()
        return self._master_key

    def _ensure_dir(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        if os.name != "nt":
            os.chmod(self.data_dir, 0o700)

    def _create(self) -> MasterKey:
        self._ensure_dir()
        key = MasterKey.generate(version=1)
        try:
            fd = os.open(str(self.key_path), os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        except FileExistsError:
            # Another process won the race; use its key
            key.wipe()
            return self._load()
        except OSError as e:
            key.wipe()
            raise StorageError(f"Failed to create key file: {e}") from e
        with os.fdopen(fd, "wb") as f:
            f.write(self._serialize(key))
            f.flush()
            os.fsync(f.fileno())
        logger.info(f"Generated new master key at {self.key_path}")
        return key

    @staticmethod
    def _serialize(key: MasterKey) -> bytes:
        return json.dumps(
            {
                "version": key.version,
                "key": base64.b64encode(key.material()).decode("ascii"),
            }
        ).encode("utf-8")

    def _check_permissions(self) -> None:
        if os.name == "nt":
            return
        mode = stat.S_IMODE(self.key_path.stat().st_mode)
        if mode & 0o077:
            logger.warning(
                f"Key file permissions {oct(mode)} are too open; restricting to 0600"
            )
            os.chmod(self.key_path, 0o600)

    def _load(self) -> MasterKey:
        try:
            self._check_permissions()
            with open(self.key_path, "rb") as f:
                data = json.loads(f.read().decode("utf-8"))
            material = base64.b64decode(data["key"], validate=True)
            version = int(data["version"])
        except FileNotFoundError:
            raise KeyUnavailable(f"Key file {self.key_path} is missing") from None
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise KeyUnavailable(f"Key file {self.key_path} is unreadable: {e}") from e
        if len(material) != KEY_SIZE:
            raise KeyUnavailable(f"Key file {self.key_path} holds a malformed key")
        return MasterKey(material, version)

    def recover(self, store: CredentialStore) -> None:
        """Finish or roll back a rotation interrupted by a crash.

        The rename of the pending key file is the commit point: if it is
        still pending the rotation never committed, otherwise the staged
        records belong to the live key and are promoted.
        """
        if self.pending_path.exists():
            discarded = store.discard_staged()
            self.pending_path.unlink()
            logger.warning(
                f"Rolled back interrupted key rotation ({discarded} staged records discarded)"
            )
        elif store.has_staged():
            promoted = store.promote_staged()
            logger.warning(f"Completed interrupted key rotation ({promoted} records)")

    def rotate(self, store: CredentialStore) -> MasterKey:
        """Replace the master key and re-encrypt every stored credential.

        All-or-nothing: failure before the commit point leaves the old key
        file and the old records untouched.

        Raises:
            KeyUnavailable: Key file missing or unreadable
            IntegrityError: A record does not verify under the current key
            StorageError: Writing the new key or records failed
        """
        if not self.key_path.exists():
            raise KeyUnavailable(f"Key file {self.key_path} is missing")
        current = self.get_or_create_master_key(expect_existing=True)

        with store.write_lock():
            old_vault = Vault(current)
            payloads = {}
            for label in sorted(store.list()):
                record = store.get(label)
                payloads[label] = (record.provider, old_vault.open_credential(record))

            new_key = MasterKey.generate(version=current.version + 1)
            new_vault = Vault(new_key)
            try:
                atomic_write(self.pending_path, self._serialize(new_key))
                for label, (provider, payload) in payloads.items():
                    store.stage(label, new_vault.seal_credential(label, provider, payload))
                # Commit point
                os.replace(self.pending_path, self.key_path)
            except OSError as e:
                store.discard_staged()
                try:
                    self.pending_path.unlink()
                except OSError:
                    pass
                new_key.wipe()
                logger.error(f"Key rotation aborted, old key kept: {e}")
                raise StorageError(f"Key rotation failed: {e}") from e

            current.replace(new_key.material(), new_key.version)
            new_key.wipe()
            try:
                store.promote_staged()
            except OSError as e:
                # recover() completes the promotion on next start
                raise StorageError(f"Key rotated but records not yet promoted: {e}") from e

        logger.info(
            f"Rotated master key to v{current.version}, re-encrypted {len(payloads)} credentials"
        )
        return current

    def close(self) -> None:
        """Best-effort zeroing of the in-memory key."""
        if self._master_key is not None:
            self._master_key.wipe()
            logger.debug("Master key cleared from memory")
