"""On-disk store for encrypted credential records.

One JSON file per account. Every write lands in a temp file in the same
directory, is flushed and fsynced, then renamed over the previous file, so
a crash leaves either the old or the new record and never a mixture.
"""

import base64
import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from ..errors import IntegrityError, NotFound, StorageError
from .credentials import EncryptedCredential

__all__ = ["CredentialStore"]

logger = logging.getLogger(__name__)

RECORD_EXT = ".json"
STAGED_EXT = ".pending"
TEMP_PREFIX = ".tmp-"


def _fsync_dir(path: Path) -> None:
    if os.name == "nt":
        return
    try:
        fd = os.open(str(path), os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


def atomic_write(path: Path, data: bytes, mode: int = 0o600) -> None:
    """Write ``data`` to ``path`` via temp file + fsync + rename."""
    fd, tmp_name = tempfile.mkstemp(prefix=TEMP_PREFIX, dir=str(path.parent))
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise
    _fsync_dir(path.parent)


def _encode_label(label: str) -> str:
    return base64.urlsafe_b64encode(label.encode("utf-8")).decode("ascii").rstrip("=")


class CredentialStore:
    """Encrypted credential records, one file per account label."""

    def __init__(self, root: Path):
        """Initialize the store.

        Args:
            root: Directory holding the record files (created 0700)
        """
        self.root = Path(root)
        self._lock = threading.RLock()
        self.root.mkdir(parents=True, exist_ok=True)
        if os.name != "nt":
            os.chmod(self.root, 0o700)
        self._remove_stale_temp_files()

    def _path_for(self, label: str) -> Path:
        return self.root / f"{_encode_label(label)}{RECORD_EXT}"

    def _staged_path_for(self, label: str) -> Path:
        return self.root / f"{_encode_label(label)}{STAGED_EXT}"

    def credential_ref(self, label: str) -> str:
        """Record file name for an account."""
        return self._path_for(label).name

    def _remove_stale_temp_files(self) -> None:
        # Leftovers from a crash between write and rename
        for path in self.root.glob(f"{TEMP_PREFIX}*"):
            try:
                path.unlink()
                logger.info(f"Removed stale temp file {path.name}")
            except OSError as e:
                logger.warning(f"Could not remove stale temp file {path.name}: {e}")

    @contextmanager
    def write_lock(self) -> Iterator[None]:
        """Hold the single-writer lock across several operations."""
        with self._lock:
            yield

    @staticmethod
    def _serialize(record: EncryptedCredential) -> bytes:
        return json.dumps(record.to_dict(), sort_keys=True).encode("utf-8")

    @staticmethod
    def _read_record(path: Path) -> EncryptedCredential:
        try:
            with open(path, "rb") as f:
                data = json.loads(f.read().decode("utf-8"))
        except (ValueError, UnicodeDecodeError) as e:
            raise IntegrityError(f"Corrupt credential record {path.name}: {e}") from e
        return EncryptedCredential.from_dict(data)

    def put(self, label: str, record: EncryptedCredential) -> None:
        """Atomically write (or replace) the record for ``label``.

        Raises:
            StorageError: If the write fails; the previous record is kept
        """
        if record.account_label != label:
            raise ValueError("Record label does not match store key")
        with self._lock:
            try:
                atomic_write(self._path_for(label), self._serialize(record))
            except OSError as e:
                logger.error(f"Failed to store credential for {label}: {e}")
                raise StorageError(f"Failed to store credential for {label}: {e}") from e
        logger.debug(f"Stored credential for {label} (key v{record.key_version})")

    def get(self, label: str) -> EncryptedCredential:
        """Read the record for ``label``.

        Raises:
            NotFound: No record for this label
            IntegrityError: The record file is corrupt
        """
        path = self._path_for(label)
        try:
            record = self._read_record(path)
        except FileNotFoundError:
            raise NotFound(f"No credential stored for {label}") from None
        except OSError as e:
            raise StorageError(f"Failed to read credential for {label}: {e}") from e
        if record.account_label != label:
            raise IntegrityError(f"Record {path.name} belongs to another account")
        return record

    def exists(self, label: str) -> bool:
        return self._path_for(label).exists()

    def delete(self, label: str) -> None:
        """Remove the record for ``label``.

        Raises:
            NotFound: No record for this label
        """
        with self._lock:
            path = self._path_for(label)
            try:
                path.unlink()
            except FileNotFoundError:
                raise NotFound(f"No credential stored for {label}") from None
            except OSError as e:
                raise StorageError(f"Failed to delete credential for {label}: {e}") from e
            _fsync_dir(self.root)
        logger.info(f"Deleted credential for {label}")

    def list(self) -> set[str]:
        """Labels of all stored records. Unreadable files are skipped."""
        labels = set()
        for path in self.root.glob(f"*{RECORD_EXT}"):
            if path.name.startswith(TEMP_PREFIX):
                continue
            try:
                labels.add(self._read_record(path).account_label)
            except (IntegrityError, OSError) as e:
                logger.warning(f"Skipping unreadable credential record {path.name}: {e}")
        return labels

    # Staging for multi-record commits (key rotation)

    def stage(self, label: str, record: EncryptedCredential) -> None:
        """Write a replacement record next to the live one without activating it."""
        atomic_write(self._staged_path_for(label), self._serialize(record))

    def has_staged(self) -> bool:
        return any(self.root.glob(f"*{STAGED_EXT}"))

    def promote_staged(self) -> int:
        """Rename every staged record over its live counterpart."""
        count = 0
        with self._lock:
            for staged in sorted(self.root.glob(f"*{STAGED_EXT}")):
                os.replace(staged, staged.with_suffix(RECORD_EXT))
                count += 1
            _fsync_dir(self.root)
        return count

    def discard_staged(self) -> int:
        count = 0
        with self._lock:
            for staged in self.root.glob(f"*{STAGED_EXT}"):
                try:
                    staged.unlink()
                    count += 1
                except OSError as e:
                    logger.warning(f"Could not remove staged record {staged.name}: {e}")
        return count
