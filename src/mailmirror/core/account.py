# =============================================================================
# Account Model
# =============================================================================
# Represents a mail account the sync engine mirrors. An account carries its
# IMAP connection details plus one of two credential kinds:
#   - password: a plain IMAP password (normally loaded from the keyring)
#   - oauth2:   an access token (and refresh token) obtained elsewhere
#
# The sync engine treats credentials as opaque. Token refresh is performed by
# a TokenRefresher collaborator which returns a new Account with the fresh
# token; pipelines swap that copy in place.
# =============================================================================

from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone


# How close to expiry an OAuth2 token may get before we ask for a refresh
TOKEN_REFRESH_MARGIN = timedelta(minutes=5)


@dataclass
class Account:
    """
    Represents a mail account with IMAP configuration and credentials.

    Attributes:
        id: Stable identifier for this account. Used as the key for
            pipelines, caches and keyring lookups.
        email: The account's own email address. Used to decide who the
               "other party" of a conversation is.
        display_name: Name shown for this account. Defaults to the email.

        imap_host: Hostname of the IMAP server.
        imap_port: IMAP port (993 for SSL, 143 for STARTTLS).
        imap_security: "ssl" or "starttls".

        auth_type: "password" or "oauth2".
        password: IMAP password, if auth_type is "password".
        oauth2_access_token: Bearer token, if auth_type is "oauth2".
        oauth2_refresh_token: Token used by the refresher collaborator.
        oauth2_expires_at: When the access token expires (UTC).

        enabled: Disabled accounts are never synced.

    Example:
        >>> account = Account(
        ...     id="personal",
        ...     email="user@example.com",
        ...     imap_host="imap.example.com",
        ...     password="hunter2",
        ... )
    """

    id: str                             # Stable account key
    email: str                          # Account address
    display_name: str = ""

    # IMAP configuration
    imap_host: str = ""
    imap_port: int = 993
    imap_security: str = "ssl"          # "ssl" or "starttls"

    # Credentials (opaque to the sync engine)
    auth_type: str = "password"         # "password" or "oauth2"
    password: str = ""
    oauth2_access_token: str = ""
    oauth2_refresh_token: str = ""
    oauth2_expires_at: datetime | None = None

    enabled: bool = True

    def __post_init__(self) -> None:
        if not self.display_name:
            self.display_name = self.email

    @property
    def keyring_service(self) -> str:
        """
        Returns the service name used for keyring password storage.

            keyring get mailmirror:personal user@example.com
        """
        return f"mailmirror:{self.id}"

    @property
    def is_oauth2(self) -> bool:
        return self.auth_type == "oauth2"

    def token_needs_refresh(self, now: datetime | None = None) -> bool:
        """
        Returns True if this is an OAuth2 account whose access token is
        missing, or expires within TOKEN_REFRESH_MARGIN.
        """
        if not self.is_oauth2:
            return False
        if not self.oauth2_access_token:
            return bool(self.oauth2_refresh_token)
        if self.oauth2_expires_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        return self.oauth2_expires_at - now <= TOKEN_REFRESH_MARGIN

    def with_token(
        self,
        access_token: str,
        expires_at: datetime | None,
        refresh_token: str | None = None,
    ) -> "Account":
        """Return a copy of this account carrying a refreshed token."""
        return replace(
            self,
            oauth2_access_token=access_token,
            oauth2_expires_at=expires_at,
            oauth2_refresh_token=refresh_token or self.oauth2_refresh_token,
        )

    def __str__(self) -> str:
        return f"{self.id} <{self.email}>"

    def __repr__(self) -> str:
        return (
            f"Account(id={self.id!r}, email={self.email!r}, "
            f"imap={self.imap_host}:{self.imap_port}, auth={self.auth_type})"
        )


def has_valid_credentials(account: Account | None) -> bool:
    """
    Check whether an account can talk to its server at all.

    A password account needs a password; an OAuth2 account needs an access
    token. Expired tokens still count: the refresher fixes those.
    """
    if account is None:
        return False
    if account.is_oauth2:
        return bool(account.oauth2_access_token)
    return bool(account.password)
