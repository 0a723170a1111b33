"""Programmatic surface used by the widgets and the setup flow."""

import logging
import threading
from typing import Any, Callable, Optional

import requests

from .auth.account_credentials import AccountCredentials
from .auth.credential_store import CredentialStore
from .auth.credentials import AuthorizationCode, PasswordCredential
from .auth.key_manager import KeyManager
from .auth.vault import Vault
from .cancellation import CancellationToken
from .config import Config
from .errors import DuplicateAccount, NotFound
from .models import Account, Event, Provider, SyncState, SyncStatus, TimeRange
from .providers.base import ProviderAdapter
from .providers.registry import create_adapters
from .sync.locks import AccountLocks
from .sync.scheduler import SyncScheduler
from .sync.snapshot import EventSnapshots
from .sync.state_store import SyncStateStore
from .sync.token_refresher import TokenRefresher

__all__ = ["SyncService"]

logger = logging.getLogger(__name__)

CREDENTIALS_DIR = "credentials"
STATE_DB = "sync_state.db"


def _coerce_secret(provider: Provider, secret: Any):
    """Accept plain dicts from the setup flow as well as typed secrets."""
    if not isinstance(secret, dict):
        return secret
    try:
        if provider == Provider.ICLOUD:
            return PasswordCredential(apple_id=secret["apple_id"], password=secret["password"])
        return AuthorizationCode(
            code=secret["code"],
            redirect_uri=secret["redirect_uri"],
            code_verifier=secret.get("code_verifier"),
        )
    except KeyError as e:
        raise ValueError(f"Secret for {provider.value} is missing {e}") from None


class SyncService:
    """Owns the key, the credential store and the scheduler.

    Usage:
        with SyncService(Config.load()) as service:
            service.add_account("Personal", Provider.ICLOUD, secret)
            events = service.get_events("Personal", TimeRange.around())
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        adapters: Optional[dict[Provider, ProviderAdapter]] = None,
        on_events: Optional[Callable[[str, tuple[Event, ...]], None]] = None,
        session: Optional[requests.Session] = None,
    ):
        """Open the data directory and load (or create) the master key.

        Args:
            config: Application configuration (loaded from disk if omitted)
            adapters: Provider adapter registry (for dependency injection/testing)
            on_events: Called with each account's freshly published events
            session: Optional requests session for the default adapters

        Raises:
            KeyUnavailable: Credentials exist but the key file is missing or unreadable
        """
        self.config = config or Config.load()
        self.data_dir = self.config.resolve_data_dir()
        self.cancel_token = CancellationToken()

        self.key_manager = KeyManager(self.data_dir)
        self.store = CredentialStore(self.data_dir / CREDENTIALS_DIR)
        self.key_manager.recover(self.store)
        master_key = self.key_manager.get_or_create_master_key(
            expect_existing=bool(self.store.list())
        )
        self.vault = Vault(master_key)
        self.credentials = AccountCredentials(self.store, self.vault)
        self.state_store = SyncStateStore(self.data_dir / STATE_DB)

        self.adapters = adapters or create_adapters(self.config, self.cancel_token, session)
        self.locks = AccountLocks()
        self.snapshots = EventSnapshots()
        self.refresher = TokenRefresher(
            self.credentials,
            self.adapters,
            self.state_store,
            self.locks,
            margin_seconds=self.config.tokens.refresh_margin_seconds,
        )
        self.scheduler = SyncScheduler(
            self.config.sync,
            self.adapters,
            self.credentials,
            self.state_store,
            self.refresher,
            self.locks,
            snapshots=self.snapshots,
            cancel_token=self.cancel_token,
            on_events=on_events,
            token_settings=self.config.tokens,
        )
        self._accounts_lock = threading.Lock()
        self._closed = False

    # Lifecycle

    def start(self) -> None:
        """Start background sync for every stored account."""
        self.scheduler.start(self.store.list())

    def shutdown(self) -> None:
        """Stop syncing, close connections and clear the key from memory."""
        if self._closed:
            return
        self._closed = True
        self.scheduler.shutdown()
        for adapter in self.adapters.values():
            adapter.close()
        self.state_store.close()
        self.key_manager.close()
        logger.info("Sync service shut down")

    def __enter__(self) -> "SyncService":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.shutdown()

    # Accounts

    def _require(self, label: str) -> None:
        if not self.store.exists(label):
            raise NotFound(f"No account named {label!r}")

    def add_account(self, label: str, provider: Provider, secret: Any) -> Account:
        """Authenticate with the provider and store the encrypted credential.

        Args:
            label: Unique account name shown to the user
            provider: ICLOUD or GOOGLE
            secret: PasswordCredential (iCloud) or AuthorizationCode (Google),
                or an equivalent dict

        Raises:
            AuthError: Provider rejected the secret
            DuplicateAccount: ``label`` is already in use
            NetworkError: Provider unreachable
        """
        if not isinstance(label, str) or not label.strip():
            raise ValueError("Account label must be a non-empty string")
        provider = Provider(provider)
        adapter = self.adapters[provider]

        with self._accounts_lock:
            if self.store.exists(label):
                raise DuplicateAccount(f"An account named {label!r} already exists")
            payload = adapter.authenticate(_coerce_secret(provider, secret))
            self.credentials.save(label, provider, payload)
            self.state_store.delete(label)

        self.scheduler.add_account(label)
        logger.info(f"Added {provider.value} account {label}")
        return Account(label=label, provider=provider, credential_ref=self.store.credential_ref(label))

    def reauthenticate_account(self, label: str, secret: Any) -> Account:
        """Replace an account's credential and clear NEEDS_REAUTH.

        Raises:
            NotFound: No such account
            AuthError: Provider rejected the secret
        """
        with self._accounts_lock:
            self._require(label)
            provider = self.store.get(label).provider
            payload = self.adapters[provider].authenticate(_coerce_secret(provider, secret))
            with self.locks.get(label):
                self.credentials.save(label, provider, payload)
                state = self.state_store.get(label)
                state.status = SyncStatus.OK
                state.backoff_attempts = 0
                state.last_error = None
                self.state_store.save(state)

        logger.info(f"Re-authenticated account {label}")
        self.scheduler.trigger(label)
        return Account(label=label, provider=provider, credential_ref=self.store.credential_ref(label))

    def remove_account(self, label: str) -> None:
        """Delete the credential, sync state and cached events of an account.

        Raises:
            NotFound: No such account
        """
        with self._accounts_lock:
            with self.locks.get(label):
                self.store.delete(label)
                self.state_store.delete(label)
        self.scheduler.remove_account(label)
        logger.info(f"Removed account {label}")

    def list_accounts(self) -> set[Account]:
        accounts = set()
        for label in self.store.list():
            try:
                record = self.store.get(label)
            except NotFound:
                continue
            accounts.add(
                Account(
                    label=label,
                    provider=record.provider,
                    credential_ref=self.store.credential_ref(label),
                )
            )
        return accounts

    # Sync

    def trigger_sync(self, label: str) -> None:
        """Queue a sync for ``label`` and return immediately.

        Raises:
            NotFound: No such account
        """
        self._require(label)
        self.scheduler.trigger(label)

    def sync_now(self, label: str) -> SyncState:
        """Run a sync for ``label`` on the calling thread, even during backoff."""
        self._require(label)
        return self.scheduler.run(label, force=True)

    def get_sync_state(self, label: str) -> SyncState:
        self._require(label)
        return self.state_store.get(label)

    def get_events(self, label: str, time_range: TimeRange) -> list[Event]:
        """Last published events of ``label`` that fall in ``time_range``.

        Never waits for a running sync.

        Raises:
            NotFound: No such account
        """
        self._require(label)
        return [event for event in self.snapshots.get(label) if event.occurs_within(time_range)]

    def rotate_key(self) -> None:
        """Re-encrypt every credential under a fresh master key.

        Raises:
            KeyUnavailable: The key file is missing or unreadable
            StorageError: Writing failed; the old key is still in effect
        """
        self.key_manager.rotate(self.store)
