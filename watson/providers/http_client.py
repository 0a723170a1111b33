"""Base HTTP client with retry logic for provider APIs."""

import logging
import threading
from typing import Any, Optional

import requests

from .. import __version__
from ..cancellation import CancellationToken
from ..errors import AuthError, NetworkError
from ..sync.retry import RetryConfig, RetryExhausted, retry_with_backoff

__all__ = ["BaseHttpClient"]

logger = logging.getLogger(__name__)


class _TransientError(Exception):
    """Internal: Marks an error as transient/retryable."""

    pass


class BaseHttpClient:
    """Base HTTP client with retry logic.

    Handles:
    - Per-thread session management
    - Retry with exponential backoff (cancellable)
    - Error classification into AuthError / NetworkError

    Statuses listed in ``allow_status`` are handed back to the caller
    untouched so adapters can interpret provider-specific bodies
    (OAuth error codes, expired sync tokens).
    """

    DEFAULT_RETRY_CONFIG = RetryConfig(
        max_retries=3,
        base_delay=1.0,
        max_delay=30.0,
        exponential_base=2.0,
        jitter=True,
    )

    USER_AGENT = f"Watson-Sync/{__version__}"

    def __init__(
        self,
        timeout: int = 30,
        retry_config: Optional[RetryConfig] = None,
        session: Optional[requests.Session] = None,
        cancel_token: Optional[CancellationToken] = None,
    ):
        """Initialize base HTTP client.

        Args:
            timeout: Request timeout in seconds
            retry_config: Configuration for retry with exponential backoff
            session: Optional requests session (for dependency injection/testing)
            cancel_token: Shared shutdown token checked between attempts
        """
        self.timeout = timeout
        self.retry_config = retry_config or self.DEFAULT_RETRY_CONFIG
        self.cancel_token = cancel_token or CancellationToken()
        self._session = session
        self._owns_session = session is None
        self._local = threading.local()
        self._sessions: list[requests.Session] = []
        self._sessions_lock = threading.Lock()

    @property
    def session(self) -> requests.Session:
        """Session for the calling thread (or the injected one)."""
        if self._session is not None:
            return self._session
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            session.headers["User-Agent"] = self.USER_AGENT
            self._local.session = session
            with self._sessions_lock:
                self._sessions.append(session)
        return session

    def _request(
        self,
        method: str,
        url: str,
        allow_status: tuple = (),
        retry: bool = True,
        **kwargs: Any,
    ) -> requests.Response:
        """Make a request to a provider.

        Args:
            method: HTTP method (including WebDAV verbs)
            url: Absolute URL
            allow_status: Non-2xx statuses returned instead of raised
            retry: Whether to retry on transient failures
            **kwargs: Passed through to ``requests.Session.request``

        Returns:
            The response

        Raises:
            AuthError: For 401/403 responses (not retried)
            NetworkError: Connection problems, timeouts, 429/5xx after
                retries, or any other unexpected status
            Cancelled: Shutdown requested while waiting to retry
        """
        kwargs.setdefault("timeout", self.timeout)

        def do_request() -> requests.Response:
            try:
                response = self.session.request(method, url, **kwargs)
            except requests.exceptions.ConnectionError as e:
                raise _TransientError(f"Cannot connect to {url}: {e}") from e
            except requests.exceptions.Timeout as e:
                raise _TransientError(f"Request to {url} timed out") from e

            status = response.status_code
            if status in allow_status:
                return response
            if status in (401, 403):
                raise AuthError(f"Provider rejected credentials ({status})")
            # Rate limiting and server errors are retryable
            if status == 429 or status >= 500:
                raise _TransientError(f"Server error: {status}")
            if status >= 400:
                raise NetworkError(f"Unexpected response ({status}) from {url}")
            return response

        if retry:
            try:
                return retry_with_backoff(
                    do_request,
                    config=self.retry_config,
                    retryable_exceptions=(_TransientError,),
                    cancel_token=self.cancel_token,
                )
            except RetryExhausted as e:
                if e.last_error:
                    raise NetworkError(str(e.last_error)) from e.last_error
                raise NetworkError("Request failed after retries") from e
        else:
            try:
                return do_request()
            except _TransientError as e:
                raise NetworkError(str(e)) from e

    def close(self) -> None:
        """Close the sessions we created."""
        if not self._owns_session:
            return
        with self._sessions_lock:
            for session in self._sessions:
                session.close()
            self._sessions.clear()
        self._local = threading.local()

    def __enter__(self) -> "BaseHttpClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
