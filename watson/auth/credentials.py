"""Provider secret payloads and their encrypted on-disk form."""

import base64
import json
import time
from dataclasses import dataclass
from typing import Optional, Union

from ..errors import IntegrityError
from ..models import Provider

__all__ = [
    "PasswordCredential",
    "OAuthCredential",
    "AuthorizationCode",
    "EncryptedCredential",
    "CredentialPayload",
    "payload_from_json",
    "associated_data_for",
    "RECORD_FORMAT",
]

RECORD_FORMAT = 1


@dataclass
class PasswordCredential:
    """Apple ID plus app-specific password."""

    apple_id: str
    password: str

    def to_json(self) -> str:
        return json.dumps(
            {"kind": "password", "apple_id": self.apple_id, "password": self.password}
        )

    def __repr__(self) -> str:
        return f"PasswordCredential(apple_id={self.apple_id!r}, password=***)"


@dataclass
class OAuthCredential:
    """OAuth2 token pair with absolute expiry (unix seconds)."""

    access_token: str
    refresh_token: str
    expires_at: float
    scope: str = ""
    token_type: str = "Bearer"

    def expires_in(self, now: Optional[float] = None) -> float:
        return self.expires_at - (now if now is not None else time.time())

    def to_json(self) -> str:
        return json.dumps(
            {
                "kind": "oauth",
                "access_token": self.access_token,
                "refresh_token": self.refresh_token,
                "expires_at": self.expires_at,
                "scope": self.scope,
                "token_type": self.token_type,
            }
        )

    def __repr__(self) -> str:
        return f"OAuthCredential(expires_at={self.expires_at!r}, tokens=***)"


@dataclass
class AuthorizationCode:
    """Result of the Google authorization step, exchanged for tokens."""

    code: str
    redirect_uri: str
    code_verifier: Optional[str] = None


CredentialPayload = Union[PasswordCredential, OAuthCredential]


def payload_from_json(data: str) -> CredentialPayload:
    """Parse a decrypted payload back into its typed form."""
    try:
        parsed = json.loads(data)
        kind = parsed["kind"]
        if kind == "password":
            return PasswordCredential(apple_id=parsed["apple_id"], password=parsed["password"])
        if kind == "oauth":
            return OAuthCredential(
                access_token=parsed["access_token"],
                refresh_token=parsed["refresh_token"],
                expires_at=float(parsed["expires_at"]),
                scope=parsed.get("scope", ""),
                token_type=parsed.get("token_type", "Bearer"),
            )
    except (ValueError, KeyError, TypeError) as e:
        raise IntegrityError(f"Malformed credential payload: {e}") from e
    raise IntegrityError(f"Unknown credential payload kind: {kind!r}")


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(data: str) -> bytes:
    return base64.b64decode(data.encode("ascii"), validate=True)


@dataclass(frozen=True)
class EncryptedCredential:
    """A sealed credential record. Replaced whole, never edited."""

    account_label: str
    provider: Provider
    key_version: int
    nonce: bytes
    ciphertext: bytes
    tag: bytes

    def associated_data(self) -> bytes:
        """Canonical AD binding label, provider and key version."""
        return associated_data_for(self.account_label, self.provider, self.key_version)

    def to_dict(self) -> dict:
        return {
            "format": RECORD_FORMAT,
            "version": self.key_version,
            "provider": self.provider.value,
            "label": self.account_label,
            "nonce": _b64(self.nonce),
            "ciphertext": _b64(self.ciphertext),
            "tag": _b64(self.tag),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "EncryptedCredential":
        try:
            if data.get("format", RECORD_FORMAT) != RECORD_FORMAT:
                raise ValueError(f"unsupported record format {data.get('format')}")
            return cls(
                account_label=data["label"],
                provider=Provider(data["provider"]),
                key_version=int(data["version"]),
                nonce=_unb64(data["nonce"]),
                ciphertext=_unb64(data["ciphertext"]),
                tag=_unb64(data["tag"]),
            )
        except (AttributeError, KeyError, ValueError, TypeError) as e:
            raise IntegrityError(f"Corrupt credential record: {e}") from e


def associated_data_for(label: str, provider: Provider, key_version: int) -> bytes:
    return json.dumps(
        {
            "format": RECORD_FORMAT,
            "label": label,
            "provider": provider.value,
            "version": key_version,
        },
        sort_keys=True,
        separators=(",", ":"),
    ).encode("utf-8")
