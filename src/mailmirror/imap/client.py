# =============================================================================
# IMAP Client
# =============================================================================
# Provides an async IMAP client wrapper around aioimaplib.
#
# Key responsibilities:
#   - Connection management (connect, disconnect, reconnect)
#   - Authentication (password LOGIN or XOAUTH2, over SSL or STARTTLS)
#   - Mailbox listing and selection
#   - Header and body fetching, parsed with the stdlib email package
#   - Flag updates
#
# Design notes:
#   - Headers are fetched by sequence number so we can page "newest first"
#     without knowing the UID layout. Sequence n maps to display index
#     (EXISTS - n), so index 0 is always the newest message.
#   - A header that fails to parse doesn't fail the page: its UID is
#     reported in skipped_uids so the index can re-request it later.
#   - Mailboxes are opened read-only (EXAMINE) for fetches so mirroring
#     never changes \Recent or \Seen state on the server.
# =============================================================================

import asyncio
import email
import email.header
import email.utils
import logging
import re
from dataclasses import dataclass, field
from email.message import Message as EmailMessage
from typing import Any

import keyring
from aioimaplib import aioimaplib

from mailmirror.core import (
    Account,
    AttachmentInfo,
    Mailbox,
    MessageBody,
    MessageHeader,
    MessageValidationError,
)

# Set up logging for this module
logger = logging.getLogger(__name__)


# Header fields requested for list views
HEADER_FIELDS = "FROM TO CC SUBJECT DATE MESSAGE-ID IN-REPLY-TO REFERENCES CONTENT-TYPE"

_FETCH_START = re.compile(rb"^(\d+)\s+FETCH\s*\(", re.IGNORECASE)
_LITERAL_MARKER = re.compile(rb"\{(\d+)\}\s*$")
_UID = re.compile(r"UID\s+(\d+)", re.IGNORECASE)
_FLAGS = re.compile(r"FLAGS\s*\(([^)]*)\)", re.IGNORECASE)
_INTERNALDATE = re.compile(r'INTERNALDATE\s+"([^"]+)"', re.IGNORECASE)
_MESSAGE_ID = re.compile(r"<[^>]+>")


def _quote_mailbox_name(name: str) -> str:
    """
    Quote an IMAP mailbox name if it contains special characters.

    Names with spaces or special characters must be quoted; internal quotes
    and backslashes are escaped.
    """
    if ' ' in name or '"' in name or '\\' in name or any(c in name for c in '(){}[]'):
        escaped = name.replace('\\', '\\\\').replace('"', '\\"')
        return f'"{escaped}"'
    return name


@dataclass
class ConnectionState:
    """
    Tracks the current state of an IMAP connection.

    Attributes:
        connected: Whether we have an active connection.
        authenticated: Whether we've successfully logged in.
        selected_mailbox: Currently selected mailbox, if any.
        capabilities: Server capabilities (from CAPABILITY response).
        uidvalidity: UIDVALIDITY of currently selected mailbox.
    """
    connected: bool = False
    authenticated: bool = False
    selected_mailbox: str | None = None
    capabilities: list[str] = field(default_factory=list)
    uidvalidity: int | None = None


@dataclass
class FetchItem:
    """One "n FETCH (...)" response: its sequence number, text and literal."""
    seq: int
    meta: str
    literal: bytes | None = None


class IMAPClient:
    """
    Async IMAP client for one account.

    Usage:
        >>> client = IMAPClient(account)
        >>> await client.connect()
        >>> status = await client.select_mailbox("INBOX")
        >>> headers, skipped = await client.fetch_headers(1, 50, status["EXISTS"])
        >>> await client.disconnect()

    Attributes:
        account: The Account configuration for this connection.
        state: Current connection state.
    """

    # Timeout for IMAP operations (seconds)
    TIMEOUT = 30

    def __init__(self, account: Account) -> None:
        self.account = account
        self.state = ConnectionState()
        self._client: aioimaplib.IMAP4_SSL | aioimaplib.IMAP4 | None = None

    @property
    def is_connected(self) -> bool:
        """Check if client is connected and authenticated."""
        return self.state.connected and self.state.authenticated and self._client is not None

    # =========================================================================
    # Connection Management
    # =========================================================================

    async def connect(self) -> bool:
        """
        Establish connection to the IMAP server.

        Returns:
            True if connection and authentication succeeded.

        Raises:
            IMAPConnectionError: If unable to connect to server.
            IMAPAuthenticationError: If login fails.
        """
        logger.info(f"Connecting to {self.account.imap_host}:{self.account.imap_port}")

        try:
            if self.account.imap_security == "ssl":
                # Direct SSL connection (usually port 993)
                self._client = aioimaplib.IMAP4_SSL(
                    host=self.account.imap_host,
                    port=self.account.imap_port,
                    timeout=self.TIMEOUT,
                )
            else:
                # Plain connection, upgraded with STARTTLS (usually port 143)
                self._client = aioimaplib.IMAP4(
                    host=self.account.imap_host,
                    port=self.account.imap_port,
                    timeout=self.TIMEOUT,
                )

            await self._client.wait_hello_from_server()
            self.state.connected = True

            # aioimaplib stores capabilities on the protocol after the greeting
            self.state.capabilities = list(self._client.protocol.capabilities)
            logger.debug(f"Server capabilities: {self.state.capabilities}")

            if self.account.imap_security == "starttls":
                if not self._client.has_capability("STARTTLS"):
                    raise IMAPConnectionError("Server does not support STARTTLS")
                logger.debug("Upgrading to TLS via STARTTLS")
                await self._client.starttls()

            await self._authenticate()

            logger.info(f"Successfully connected to {self.account.imap_host}")
            return True

        except asyncio.TimeoutError as e:
            self.state.connected = False
            raise IMAPConnectionError(
                f"Connection timed out to {self.account.imap_host}:{self.account.imap_port}"
            ) from e
        except OSError as e:
            self.state.connected = False
            raise IMAPConnectionError(
                f"Failed to connect to {self.account.imap_host}:{self.account.imap_port}: {e}"
            ) from e

    async def _authenticate(self) -> None:
        """
        Authenticate with the server.

        OAuth2 accounts use XOAUTH2 with their access token. Password
        accounts use the password on the account, falling back to the
        system keyring.

        Raises:
            IMAPAuthenticationError: If login fails or no credential exists.
        """
        if self.account.is_oauth2:
            if not self.account.oauth2_access_token:
                raise IMAPAuthenticationError(f"No OAuth2 access token for {self.account.email}")
            logger.debug(f"Authenticating as {self.account.email} via XOAUTH2")
            response = await self._client.xoauth2(self.account.email, self.account.oauth2_access_token)
        else:
            password = self.account.password or keyring.get_password(
                self.account.keyring_service,
                self.account.email,
            )
            if not password:
                raise IMAPAuthenticationError(
                    f"No password found in keyring for {self.account.email}. "
                    f"Set it with: keyring set {self.account.keyring_service} {self.account.email}"
                )
            logger.debug(f"Authenticating as {self.account.email}")
            response = await self._client.login(self.account.email, password)

        if response.result != "OK":
            raise IMAPAuthenticationError(
                f"Authentication failed for {self.account.email}: {response.lines}"
            )

        self.state.authenticated = True
        logger.debug("Authentication successful")

    async def disconnect(self) -> None:
        """Send LOGOUT and close the connection."""
        if self._client and self.state.connected:
            try:
                logger.debug("Sending LOGOUT")
                await self._client.logout()
            except Exception as e:
                logger.warning(f"Error during logout: {e}")
            finally:
                self._client = None
                self.state = ConnectionState()

    async def ensure_connected(self) -> None:
        """
        Ensure we have an active connection, reconnecting if necessary.

        Raises:
            IMAPConnectionError: If reconnection fails.
        """
        if not self.state.connected or not self._client:
            await self.connect()

    # =========================================================================
    # Mailbox Operations
    # =========================================================================

    async def list_mailboxes(self) -> list[Mailbox]:
        """Fetch the flat list of all mailboxes."""
        await self.ensure_connected()

        # Pattern "" "*" means all mailboxes from root
        response = await self._client.list('""', "*")
        if response.result != "OK":
            raise IMAPError(f"Failed to list mailboxes: {response.lines}")

        mailboxes = []
        for line in response.lines:
            mailbox = self._parse_list_line(line)
            if mailbox:
                mailboxes.append(mailbox)

        logger.debug(f"Found {len(mailboxes)} mailboxes")
        return mailboxes

    def _parse_list_line(self, line: bytes | str) -> Mailbox | None:
        """
        Parse a single LIST response line.

        LIST response format:
            (\\HasNoChildren) "/" "INBOX"
            (\\HasNoChildren \\Sent) "/" "Sent"
        """
        if isinstance(line, (bytes, bytearray)):
            line = bytes(line).decode("utf-8", errors="replace")

        if not line or "completed" in line.lower():
            return None

        match = re.match(r'\(([^)]*)\)\s+"([^"]+)"\s+"?([^"]+)"?', line)
        if not match:
            # Alternate format: NIL delimiter or unquoted name
            match = re.match(r'\(([^)]*)\)\s+"?([^"\s]+)"?\s+(.+)', line)
            if not match:
                logger.warning(f"Could not parse mailbox line: {line}")
                return None

        flags_str, delimiter, name = match.groups()
        flags = flags_str.split() if flags_str else []
        name = name.strip().strip('"')
        if delimiter.upper() == "NIL":
            delimiter = ""

        if any(f.upper() == "\\NOSELECT" for f in flags):
            logger.debug(f"Skipping non-selectable mailbox {name}")
            return None

        return Mailbox(
            name=name,
            delimiter=delimiter,
            folder_type=Mailbox.detect_type(name, flags),
            flags=flags,
        )

    async def select_mailbox(self, mailbox: str, readonly: bool = True) -> dict[str, int]:
        """
        Select a mailbox for subsequent operations.

        Always re-issues SELECT/EXAMINE, since EXISTS is our mutation
        signal and must be current for every page.

        Returns:
            Dictionary with EXISTS, RECENT, UIDVALIDITY, UIDNEXT.

        Raises:
            IMAPError: If selection fails.
        """
        await self.ensure_connected()

        quoted_name = _quote_mailbox_name(mailbox)
        if readonly:
            response = await self._client.examine(quoted_name)
        else:
            response = await self._client.select(quoted_name)

        if response.result != "OK":
            raise IMAPError(f"Failed to select mailbox '{mailbox}': {response.lines}")

        status = self._parse_select_response(response)
        self.state.selected_mailbox = mailbox
        self.state.uidvalidity = status.get("UIDVALIDITY")

        logger.debug(f"Selected mailbox: {mailbox}, {status}")
        return status

    def _parse_select_response(self, response) -> dict[str, int]:
        """Parse SELECT/EXAMINE response into a status dictionary."""
        status: dict[str, int] = {}

        for line in response.lines:
            if isinstance(line, (bytes, bytearray)):
                line = bytes(line).decode("utf-8", errors="replace")

            match = re.search(r"(\d+)\s+EXISTS", line, re.IGNORECASE)
            if match:
                status["EXISTS"] = int(match.group(1))

            match = re.search(r"(\d+)\s+RECENT", line, re.IGNORECASE)
            if match:
                status["RECENT"] = int(match.group(1))

            match = re.search(r"UIDVALIDITY\s+(\d+)", line, re.IGNORECASE)
            if match:
                status["UIDVALIDITY"] = int(match.group(1))

            match = re.search(r"UIDNEXT\s+(\d+)", line, re.IGNORECASE)
            if match:
                status["UIDNEXT"] = int(match.group(1))

        return status

    # =========================================================================
    # Message Fetching
    # =========================================================================

    async def fetch_headers(
        self,
        seq_start: int,
        seq_end: int,
        exists: int,
    ) -> tuple[list[MessageHeader], list[int]]:
        """
        Fetch headers for sequence numbers seq_start..seq_end (inclusive)
        of the selected mailbox.

        Args:
            seq_start: Lowest sequence number (oldest message of the range).
            seq_end: Highest sequence number (newest message of the range).
            exists: EXISTS count from the SELECT, used to derive display
                    indices.

        Returns:
            (headers sorted newest first, UIDs that failed to parse)
        """
        if seq_end < seq_start or seq_end < 1:
            return [], []

        fetch_items = f"(UID FLAGS INTERNALDATE BODY.PEEK[HEADER.FIELDS ({HEADER_FIELDS})])"
        logger.debug(f"Fetching headers {seq_start}:{seq_end} from {self.state.selected_mailbox}")
        response = await self._client.fetch(f"{seq_start}:{seq_end}", fetch_items)

        if response.result != "OK":
            raise IMAPError(f"Fetch failed: {response.lines}")

        headers: list[MessageHeader] = []
        skipped: list[int] = []
        for item in self._group_fetch_response(response.lines):
            uid_match = _UID.search(item.meta)
            if not uid_match:
                logger.warning(f"FETCH response for seq {item.seq} has no UID, ignoring")
                continue
            uid = int(uid_match.group(1))
            try:
                header = self._build_header(uid, item)
            except (MessageValidationError, ValueError, TypeError) as e:
                logger.warning(f"Could not parse headers of UID {uid}: {e}")
                skipped.append(uid)
                continue
            header.display_index = exists - item.seq
            header.mailbox = self.state.selected_mailbox or ""
            headers.append(header)

        headers.sort(key=lambda h: h.display_index)
        return headers, skipped

    async def fetch_body(self, uid: int, light: bool = False) -> MessageBody | None:
        """
        Fetch one message's full content from the selected mailbox.

        Args:
            uid: IMAP UID of the message.
            light: If True, the raw source isn't kept on the result.

        Returns:
            The hydrated message, or None if the UID doesn't exist.
        """
        fetch_items = "(UID FLAGS INTERNALDATE BODY.PEEK[])"
        response = await self._client.uid("FETCH", str(uid), fetch_items)

        if response.result != "OK":
            raise IMAPError(f"Fetch of UID {uid} failed: {response.lines}")

        for item in self._group_fetch_response(response.lines):
            uid_match = _UID.search(item.meta)
            if not uid_match or int(uid_match.group(1)) != uid or item.literal is None:
                continue
            return self._build_body(uid, item, keep_raw=not light)

        return None

    def _group_fetch_response(self, lines: list[Any]) -> list[FetchItem]:
        """
        Group aioimaplib response lines into one FetchItem per message.

        aioimaplib returns each FETCH as a text line ending in a {N}
        literal marker, followed by the literal bytes, followed by the rest
        of the response text (closing paren, possibly more items).
        """
        items: list[FetchItem] = []
        current: FetchItem | None = None
        expect_literal = False

        for line in lines:
            raw = bytes(line) if isinstance(line, (bytes, bytearray)) else str(line).encode("utf-8")

            if expect_literal and current is not None:
                current.literal = raw
                expect_literal = False
                continue

            start = _FETCH_START.match(raw)
            if start:
                current = FetchItem(seq=int(start.group(1)), meta=raw.decode("utf-8", errors="replace"))
                items.append(current)
            elif current is not None:
                current.meta += " " + raw.decode("utf-8", errors="replace").strip()
            else:
                continue

            if _LITERAL_MARKER.search(raw):
                expect_literal = True

        return items

    def _header_fields(self, uid: int, item: FetchItem, msg: EmailMessage) -> dict[str, Any]:
        """Collect the fields MessageHeader.from_dict() expects."""
        flags_match = _FLAGS.search(item.meta)
        flags = flags_match.group(1).split() if flags_match else []

        date = msg.get("Date")
        if not date:
            internal = _INTERNALDATE.search(item.meta)
            date = self._parse_internaldate(internal.group(1)) if internal else None
        else:
            date = self._decode_header(date)

        references = _MESSAGE_ID.findall(msg.get("References", "") or "")
        in_reply_to = _MESSAGE_ID.findall(msg.get("In-Reply-To", "") or "")
        message_id = _MESSAGE_ID.findall(msg.get("Message-ID", "") or "")

        return {
            "uid": uid,
            "message_id": message_id[0] if message_id else "",
            "in_reply_to": in_reply_to[0] if in_reply_to else "",
            "references": references,
            "from": self._parse_addresses(msg.get_all("From", []))[:1],
            "to": self._parse_addresses(msg.get_all("To", [])),
            "cc": self._parse_addresses(msg.get_all("Cc", [])),
            "subject": self._decode_header(msg.get("Subject", "") or ""),
            "date": date,
            "flags": flags,
            "has_attachments": msg.get_content_type() == "multipart/mixed",
        }

    def _build_header(self, uid: int, item: FetchItem) -> MessageHeader:
        msg = email.message_from_bytes(item.literal or b"")
        data = self._header_fields(uid, item, msg)
        data["from"] = data["from"][0] if data["from"] else None
        return MessageHeader.from_dict(data)

    def _build_body(self, uid: int, item: FetchItem, keep_raw: bool) -> MessageBody:
        msg = email.message_from_bytes(item.literal)
        data = self._header_fields(uid, item, msg)
        data["from"] = data["from"][0] if data["from"] else None

        text, html, attachments = self._parse_body(msg)
        body = MessageBody.from_dict(data)
        body.text = text
        body.html = html
        body.attachments = attachments
        body.has_attachments = any(not a.is_inline for a in attachments)
        body.mailbox = self.state.selected_mailbox or ""
        if keep_raw:
            body.raw = item.literal
        return body

    def _parse_internaldate(self, value: str):
        """INTERNALDATE looks like 17-Jul-1996 02:44:25 -0700."""
        try:
            return email.utils.parsedate_to_datetime(
                value.replace("-", " ", 2)
            )
        except (TypeError, ValueError):
            return None

    def _parse_addresses(self, values: list[str]) -> list[dict[str, str]]:
        """Parse header values into {"name", "address"} dicts."""
        decoded = [self._decode_header(v) for v in values]
        return [
            {"name": name, "address": address}
            for name, address in email.utils.getaddresses(decoded)
            if address
        ]

    def _decode_header(self, value: str) -> str:
        """Decode RFC 2047 encoded header value."""
        if not value:
            return ""
        try:
            decoded_parts = email.header.decode_header(str(value))
            result = ""
            for part, charset in decoded_parts:
                if isinstance(part, bytes):
                    result += part.decode(charset or "utf-8", errors="replace")
                else:
                    result += part
            return result
        except (LookupError, ValueError):
            return str(value)

    def _parse_body(self, msg: EmailMessage) -> tuple[str, str, list[AttachmentInfo]]:
        """
        Split a parsed message into text, HTML and attachment metadata.

        Returns:
            Tuple of (text, html, attachments).
        """
        text = ""
        html = ""
        attachments: list[AttachmentInfo] = []

        if not msg.is_multipart():
            content_type = msg.get_content_type()
            if content_type == "text/plain":
                text = self._decode_part(msg)
            elif content_type == "text/html":
                html = self._decode_part(msg)
            return text, html, attachments

        for part in msg.walk():
            if part.is_multipart():
                continue

            content_type = part.get_content_type()
            disposition = str(part.get("Content-Disposition", ""))

            if "attachment" in disposition:
                attachments.append(self._attachment_info(part, inline=False))
            elif content_type == "text/plain" and not text:
                text = self._decode_part(part)
            elif content_type == "text/html" and not html:
                html = self._decode_part(part)
            elif content_type.startswith("image/") or "inline" in disposition:
                attachments.append(self._attachment_info(part, inline=True))

        return text, html, attachments

    def _decode_part(self, part: EmailMessage) -> str:
        """Decode a message part to string."""
        payload = part.get_payload(decode=True)
        if isinstance(payload, bytes):
            charset = part.get_content_charset() or "utf-8"
            try:
                return payload.decode(charset, errors="replace")
            except (LookupError, UnicodeDecodeError):
                return payload.decode("utf-8", errors="replace")
        return str(payload) if payload else ""

    def _attachment_info(self, part: EmailMessage, inline: bool) -> AttachmentInfo:
        """Attachment metadata for a message part."""
        filename = part.get_filename()
        if not filename:
            content_type = part.get_content_type()
            ext = content_type.split("/")[-1] if "/" in content_type else "bin"
            filename = f"attachment.{ext}"

        payload = part.get_payload(decode=True)
        content_id = part.get("Content-ID")
        return AttachmentInfo(
            filename=self._decode_header(filename),
            content_type=part.get_content_type(),
            size=len(payload) if isinstance(payload, bytes) else 0,
            content_id=content_id.strip("<>") if content_id else None,
            is_inline=inline,
        )

    # =========================================================================
    # Flag Operations
    # =========================================================================

    async def set_flags(self, mailbox: str, uids: list[int], flags: list[str], *, add: bool = True) -> None:
        """
        Add or remove flags on messages.

        Args:
            mailbox: Mailbox containing the messages.
            uids: UIDs of messages to modify.
            flags: Flags to add/remove (e.g., ["\\Seen", "\\Flagged"]).
            add: If True, add flags. If False, remove flags.
        """
        await self.select_mailbox(mailbox, readonly=False)

        uid_set = ",".join(str(u) for u in uids)
        flags_str = " ".join(flags)
        command = f"+FLAGS ({flags_str})" if add else f"-FLAGS ({flags_str})"

        logger.debug(f"Setting flags on {uid_set}: {command}")
        response = await self._client.uid("STORE", uid_set, command)

        if response.result != "OK":
            raise IMAPError(f"Failed to set flags: {response.lines}")


# =============================================================================
# Exceptions
# =============================================================================

class IMAPError(Exception):
    """Base exception for IMAP operations."""
    pass


class IMAPConnectionError(IMAPError):
    """Raised when unable to connect to IMAP server."""
    pass


class IMAPAuthenticationError(IMAPError):
    """Raised when IMAP authentication fails."""
    pass
