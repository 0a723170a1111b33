"""Auth module - master key, encrypted credential storage and Google login."""

from .browser_auth import AuthFlowResult, GoogleAuthFlow
from .account_credentials import AccountCredentials
from .credential_store import CredentialStore
from .credentials import (
    AuthorizationCode,
    EncryptedCredential,
    OAuthCredential,
    PasswordCredential,
)
from .key_manager import KeyManager
from .master_key import MasterKey
from .vault import Vault

__all__ = [
    "AccountCredentials",
    "AuthFlowResult",
    "GoogleAuthFlow",
    "CredentialStore",
    "AuthorizationCode",
    "EncryptedCredential",
    "OAuthCredential",
    "PasswordCredential",
    "KeyManager",
    "MasterKey",
    "Vault",
]
