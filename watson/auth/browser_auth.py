"""Google authorization-code flow over a loopback redirect.

Opens the user's browser on Google's consent page. A local HTTP server on
127.0.0.1 receives the redirect with the authorization code, which the
setup flow then hands to ``SyncService.add_account``.

Security features:
- State parameter (CSRF protection)
- PKCE (S256) so an intercepted code is useless without the verifier
"""

import logging
import secrets
import threading
import webbrowser
from dataclasses import dataclass
from http.server import HTTPServer, BaseHTTPRequestHandler
from typing import Optional
from urllib.parse import urlencode, urlparse, parse_qs

from ..config import GoogleSettings
from .credentials import AuthorizationCode
from .pkce import generate_pkce_pair

__all__ = ["GoogleAuthFlow", "AuthFlowResult"]

logger = logging.getLogger(__name__)

CALLBACK_PATH = "/callback"


@dataclass
class AuthFlowResult:
    """Result of the browser authorization step."""

    success: bool
    authorization: Optional[AuthorizationCode] = None
    error: Optional[str] = None


_PAGE = """\
<!DOCTYPE html>
<html>
<head><title>Watson - {title}</title></head>
<body style="font-family: sans-serif; text-align: center; margin-top: 20vh;">
    <h2>{title}</h2>
    <p>{message}</p>
</body>
</html>
"""

_SUCCESS_HTML = _PAGE.format(
    title="Login complete", message="You may close this window and return to Watson."
)
_ERROR_HTML = _PAGE.format(
    title="Login failed", message="Something went wrong. Please try again from Watson."
)


class _CallbackHandler(BaseHTTPRequestHandler):
    """Captures the redirect carrying the authorization code."""

    def _reply(self, status: int, body: str) -> None:
        self.send_response(status)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.end_headers()
        self.wfile.write(body.encode())

    def do_GET(self):  # noqa: N802 - required by BaseHTTPRequestHandler
        parsed = urlparse(self.path)

        if parsed.path != CALLBACK_PATH:
            self.send_response(404)
            self.end_headers()
            return

        # Only the first callback counts; browsers may retry or prefetch
        with self.server.lock:
            if self.server.callback_received.is_set():
                self._reply(200, _SUCCESS_HTML)
                return

            params = parse_qs(parsed.query)
            code = params.get("code", [None])[0]
            state = params.get("state", [None])[0]

            if not state or state != self.server.expected_state:
                logger.warning("State parameter mismatch - possible CSRF attempt")
                self._reply(400, _ERROR_HTML)
                self.server.auth_error = "state_mismatch"
            elif code:
                self._reply(200, _SUCCESS_HTML)
                self.server.auth_code = code
            else:
                self._reply(400, _ERROR_HTML)
                self.server.auth_error = params.get("error", ["unknown"])[0]

            self.server.callback_received.set()

    def log_message(self, format, *args):
        """Route http.server logs through our logger."""
        logger.debug(f"Callback server: {format % args}")


class GoogleAuthFlow:
    """Runs the interactive Google consent step.

    Flow:
    1. Generate state and a PKCE verifier/challenge pair
    2. Start a loopback HTTP server on a random port
    3. Open the consent page with offline access (so we get a refresh token)
    4. Wait for the redirect, verify state
    5. Return the code, verifier and redirect URI for token exchange
    """

    TIMEOUT_SECONDS = 300

    def __init__(self, settings: GoogleSettings):
        self.settings = settings.resolved()
        self._server: Optional[HTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    def cancel(self) -> None:
        """Unblock a running ``start()`` immediately."""
        if self._server is not None:
            self._server.callback_received.set()

    def build_authorize_url(self, redirect_uri: str, state: str, code_challenge: str) -> str:
        query = urlencode(
            {
                "client_id": self.settings.client_id,
                "redirect_uri": redirect_uri,
                "response_type": "code",
                "scope": " ".join(self.settings.scopes),
                "access_type": "offline",
                "prompt": "consent",
                "state": state,
                "code_challenge": code_challenge,
                "code_challenge_method": "S256",
            }
        )
        return f"{self.settings.authorize_url}?{query}"

    def start(self) -> AuthFlowResult:
        state = secrets.token_urlsafe(32)
        code_verifier, code_challenge = generate_pkce_pair()

        self._server = HTTPServer(("127.0.0.1", 0), _CallbackHandler)
        self._server.lock = threading.Lock()
        self._server.auth_code = None
        self._server.auth_error = None
        self._server.expected_state = state
        self._server.callback_received = threading.Event()

        port = self._server.server_address[1]
        redirect_uri = f"http://127.0.0.1:{port}{CALLBACK_PATH}"
        logger.info(f"Callback server listening on port {port}")

        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)
        self._thread.start()

        try:
            logger.info("Opening browser for Google authorization")
            webbrowser.open(self.build_authorize_url(redirect_uri, state, code_challenge))

            got_response = self._server.callback_received.wait(timeout=self.TIMEOUT_SECONDS)
            if not got_response:
                logger.warning("Authorization timed out (no callback received)")
                return AuthFlowResult(success=False, error="timeout")

            if self._server.auth_code:
                logger.info("Authorization code received (state verified)")
                return AuthFlowResult(
                    success=True,
                    authorization=AuthorizationCode(
                        code=self._server.auth_code,
                        redirect_uri=redirect_uri,
                        code_verifier=code_verifier,
                    ),
                )

            logger.warning(f"Authorization failed: {self._server.auth_error}")
            return AuthFlowResult(success=False, error=self._server.auth_error or "cancelled")
        finally:
            self._server.shutdown()
            self._server.server_close()
            if self._thread is not None:
                self._thread.join(timeout=2.0)
