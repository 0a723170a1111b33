"""Proactive OAuth token renewal."""

import logging
import time
from typing import Callable, Iterable, Optional

from ..auth.account_credentials import AccountCredentials
from ..auth.credentials import CredentialPayload, OAuthCredential
from ..errors import AuthError, Cancelled, NetworkError, NotFound, ReauthRequired, WatsonError
from ..models import Provider, SyncStatus
from ..providers.base import ProviderAdapter
from .locks import AccountLocks
from .state_store import SyncStateStore

__all__ = ["TokenRefresher"]

logger = logging.getLogger(__name__)


class TokenRefresher:
    """Refreshes access tokens before they expire.

    Called inline by sync runs (``ensure_fresh``) and periodically for all
    accounts (``check_all``) so idle accounts keep a valid token too.
    """

    def __init__(
        self,
        credentials: AccountCredentials,
        adapters: dict[Provider, ProviderAdapter],
        state_store: SyncStateStore,
        locks: AccountLocks,
        margin_seconds: float = 300,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize token refresher.

        Args:
            credentials: Encrypted credential access
            adapters: Provider adapter registry
            state_store: Where NEEDS_REAUTH is recorded
            locks: Per-account locks shared with the scheduler
            margin_seconds: Refresh when fewer seconds than this remain
            clock: Source of the current Unix time
        """
        self.credentials = credentials
        self.adapters = adapters
        self.state_store = state_store
        self.locks = locks
        self.margin_seconds = margin_seconds
        self._clock = clock

    def needs_refresh(self, payload: CredentialPayload) -> bool:
        if not isinstance(payload, OAuthCredential):
            return False
        return payload.expires_in(self._clock()) < self.margin_seconds

    def ensure_fresh(
        self,
        label: str,
        provider: Provider,
        payload: CredentialPayload,
        force: bool = False,
    ) -> CredentialPayload:
        """Return a payload with a usable token, refreshing and storing if needed.

        The caller must hold the account lock.

        Raises:
            ReauthRequired: Refresh grant revoked; NEEDS_REAUTH is recorded
            NetworkError: Token endpoint unreachable
        """
        adapter = self.adapters[provider]
        if not adapter.supports_refresh:
            return payload
        if not force and not self.needs_refresh(payload):
            return payload

        try:
            refreshed = adapter.refresh(payload)
        except ReauthRequired as e:
            self._mark_reauth(label, str(e))
            raise
        self.credentials.save(label, provider, refreshed)
        logger.info(f"Refreshed access token for {label}")
        return refreshed

    def _mark_reauth(self, label: str, reason: str) -> None:
        state = self.state_store.get(label)
        state.status = SyncStatus.NEEDS_REAUTH
        state.backoff_attempts = 0
        state.last_error = reason
        self.state_store.save(state)
        logger.warning(f"Account {label} needs re-authentication: {reason}")

    def check_account(self, label: str) -> None:
        """Refresh one account's token if it is close to expiry.

        Errors are logged; network failures are retried on the next check.
        """
        with self.locks.get(label):
            if self.state_store.get(label).needs_reauth:
                return
            try:
                provider, payload = self.credentials.load(label)
                self.ensure_fresh(label, provider, payload)
            except ReauthRequired:
                pass  # Already recorded
            except AuthError as e:
                self._mark_reauth(label, str(e))
            except NetworkError as e:
                logger.warning(f"Token refresh for {label} failed, will retry: {e}")
            except NotFound:
                logger.debug(f"Account {label} removed before token check")
            except Cancelled:
                logger.debug(f"Token check for {label} cancelled")
            except WatsonError as e:
                logger.error(f"Token check for {label} failed: {e}")

    def check_all(self, labels: Iterable[str], is_cancelled: Optional[Callable[[], bool]] = None) -> None:
        for label in sorted(labels):
            if is_cancelled is not None and is_cancelled():
                return
            self.check_account(label)
