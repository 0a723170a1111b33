"""Provider adapter interface.

Defines what the scheduler and the service need from a provider, so tests
can substitute fakes and the two real adapters stay interchangeable.
"""

from typing import Any, Optional, Protocol, runtime_checkable

from ..auth.credentials import CredentialPayload
from ..models import FetchResult, Provider, TimeRange

__all__ = ["ProviderAdapter"]


@runtime_checkable
class ProviderAdapter(Protocol):
    """Interface for one calendar provider."""

    provider: Provider
    supports_refresh: bool

    def authenticate(self, secret: Any) -> CredentialPayload:
        """Verify a user-supplied secret and return the payload to store.

        Raises:
            AuthError: Provider rejected the secret
            NetworkError: Provider unreachable
        """
        ...

    def refresh(self, payload: CredentialPayload) -> CredentialPayload:
        """Renew a short-lived credential.

        Raises:
            NotApplicable: Provider has nothing to refresh
            ReauthRequired: Refresh grant was revoked
        """
        ...

    def fetch_events(
        self,
        payload: CredentialPayload,
        time_range: TimeRange,
        cursor: Optional[str],
        source_account: str,
    ) -> FetchResult:
        """Fetch events, incrementally when ``cursor`` is set.

        Raises:
            AuthError: Credentials rejected
            NetworkError: Provider unreachable after retries
            CursorInvalid: Provider no longer accepts ``cursor``
        """
        ...

    def close(self) -> None: ...
