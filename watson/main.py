"""Background daemon: keeps every configured account synchronized."""

import logging
import os
import signal
import sys
import threading
from pathlib import Path
from typing import Optional, Union

from .config import Config, setup_logging
from .errors import KeyUnavailable
from .service import SyncService

logger = logging.getLogger(__name__)

LOCK_FILE_NAME = ".watson-sync.lock"


class WatsonSyncDaemon:
    """Runs the sync service until a shutdown signal arrives."""

    def __init__(self, config: Config):
        self.config = config
        self.service = SyncService(config)
        self._shutdown_event = threading.Event()

    def _signal_handler(self, signum, frame) -> None:
        """Handle shutdown signals."""
        logger.info(f"Received signal {signum}")
        self._shutdown_event.set()

    def run(self) -> None:
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

        self.service.start()
        accounts = sorted(account.label for account in self.service.list_accounts())
        logger.info(f"Watson sync running for {len(accounts)} accounts: {', '.join(accounts) or '-'}")

        # Event.wait with a timeout keeps the main thread responsive to signals
        while not self._shutdown_event.wait(timeout=1.0):
            pass

    def shutdown(self) -> None:
        logger.info("Shutting down...")
        self.service.shutdown()
        logger.info("Shutdown complete")

    def __enter__(self) -> "WatsonSyncDaemon":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.shutdown()


def _try_lock(fd: int) -> None:
    if sys.platform == "win32":
        import msvcrt

        msvcrt.locking(fd, msvcrt.LK_NBLCK, 1)
    else:
        import fcntl

        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)


def _unlock(fd: int) -> None:
    if sys.platform == "win32":
        import msvcrt

        os.lseek(fd, 0, os.SEEK_SET)
        msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
    else:
        import fcntl

        fcntl.flock(fd, fcntl.LOCK_UN)


class SingleInstanceLock:
    """Advisory lock on a pid file; one daemon per user.

    The file holds the pid of the running daemon and is removed on release.
    """

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path) if path else Config.get_config_dir() / LOCK_FILE_NAME
        self._fd: Optional[int] = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> bool:
        """Take the lock without blocking.

        Returns:
            False if another live process holds it
        """
        if self._fd is not None:
            return True
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(self.path), os.O_RDWR | os.O_CREAT, 0o600)
        try:
            _try_lock(fd)
        except OSError:
            os.close(fd)
            logger.info(f"Lock {self.path} is held by pid {self.holder_pid() or '?'}")
            return False

        # A releasing holder may have unlinked the file we opened
        try:
            same_file = os.fstat(fd).st_ino == os.stat(self.path).st_ino
        except FileNotFoundError:
            same_file = False
        if not same_file:
            _unlock(fd)
            os.close(fd)
            logger.info(f"Lock {self.path} was released concurrently, not acquired")
            return False

        os.ftruncate(fd, 0)
        os.write(fd, str(os.getpid()).encode("ascii"))
        self._fd = fd
        logger.debug(f"Acquired {self.path} (pid {os.getpid()})")
        return True

    def holder_pid(self) -> Optional[int]:
        """Pid recorded in the lock file, if any."""
        try:
            text = self.path.read_text(encoding="ascii").strip()
        except (OSError, UnicodeDecodeError):
            return None
        return int(text) if text.isdigit() else None

    def release(self) -> None:
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        if sys.platform == "win32":
            # Open files cannot be removed on Windows
            _unlock(fd)
            os.close(fd)
            self._remove()
        else:
            # Unlink before unlocking; acquire() rejects a detached file
            self._remove()
            _unlock(fd)
            os.close(fd)

    def _remove(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove {self.path}: {e}")

    def __enter__(self) -> "SingleInstanceLock":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()


def main() -> None:
    """Main entry point."""
    config = Config.load()
    setup_logging(config.debug_mode)

    lock = SingleInstanceLock()
    if not lock.acquire():
        print("Watson sync is already running.")
        sys.exit(0)

    try:
        logger.info("Watson sync starting...")
        try:
            daemon = WatsonSyncDaemon(config)
        except KeyUnavailable as e:
            logger.critical(f"Master key unavailable: {e}")
            print(f"Cannot start: {e}", file=sys.stderr)
            sys.exit(1)
        with daemon:
            daemon.run()
    finally:
        lock.release()


if __name__ == "__main__":
    main()
