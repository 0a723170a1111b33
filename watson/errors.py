"""Error taxonomy shared by the vault, the providers and the scheduler."""

__all__ = [
    "WatsonError",
    "IntegrityError",
    "AuthError",
    "ReauthRequired",
    "NetworkError",
    "StorageError",
    "KeyUnavailable",
    "NotFound",
    "NotApplicable",
    "DuplicateAccount",
    "CursorInvalid",
    "Cancelled",
]


class WatsonError(Exception):
    """Base class for all Watson errors."""

    pass


class IntegrityError(WatsonError):
    """Ciphertext, tag or associated data failed verification."""

    pass


class AuthError(WatsonError):
    """Provider rejected the credentials. Never retried automatically."""

    pass


class ReauthRequired(AuthError):
    """Refresh token was revoked; the user has to sign in again."""

    pass


class NetworkError(WatsonError):
    """Transient network or server failure."""

    pass


class StorageError(WatsonError):
    """Disk write failed; the previous on-disk state is still in place."""

    pass


class KeyUnavailable(WatsonError):
    """Master key file is missing or unreadable. Fatal for the process."""

    pass


class NotFound(WatsonError):
    """No record or account with the requested label."""

    pass


class NotApplicable(WatsonError):
    """Operation is not supported by this provider (e.g. iCloud refresh)."""

    pass


class DuplicateAccount(WatsonError):
    """An account with this label already exists."""

    pass


class CursorInvalid(WatsonError):
    """Provider rejected the sync cursor; a full resync is needed."""

    pass


class Cancelled(WatsonError):
    """Operation was cancelled during shutdown."""

    pass
