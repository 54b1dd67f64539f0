# =============================================================================
# Mailmirror Command Line
# =============================================================================
# Headless front end for the sync engine. A GUI would drive the same objects
# (MailState, PipelineManager, ConnectivityMonitor); this one just runs them
# from the terminal:
#
#   mailmirror sync [ACCOUNT]            cache the account, then the others
#   mailmirror threads ACCOUNT           threads from cached headers
#   mailmirror correspondents ACCOUNT    chat-view grouping from the cache
#
# The app wires the collaborators together:
#   Config -> Database/Repository -> IMAPTransport -> MailState -> manager
# =============================================================================

import argparse
import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

from mailmirror import __app_name__, __version__
from mailmirror.config import Config, ConfigError, ensure_directories, load_credentials, print_paths
from mailmirror.imap import IMAPTransport
from mailmirror.state import INBOX, MailState
from mailmirror.storage import Database, Repository
from mailmirror.sync import ConnectivityMonitor, PipelineManager, PipelineState, TcpProbe
from mailmirror.threads import build_threads, group_by_correspondent


logger = logging.getLogger(__name__)


def setup_logging(debug: bool = False) -> None:
    """Configure the root logger for command-line use."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )
    # aioimaplib logs every command at DEBUG
    if not debug:
        logging.getLogger("aioimaplib").setLevel(logging.WARNING)


@asynccontextmanager
async def open_state(config: Config) -> AsyncIterator[MailState]:
    """
    Open the database and transport and build a MailState around them.

    Accounts from the config get their secrets from the keyring.
    """
    ensure_directories()
    transport = IMAPTransport(page_size=config.index.page_size)
    async with Database() as db:
        state = MailState(transport, Repository(db), config)
        for account in config.enabled_accounts():
            state.add_account(load_credentials(account))
        try:
            yield state
        finally:
            await transport.close()


def _pick_account(state: MailState, account_id: str | None) -> str:
    account_id = account_id or state.config.default_account
    if not account_id and state.accounts:
        account_id = next(iter(state.accounts))
    if not account_id or account_id not in state.accounts:
        raise ConfigError(f"Unknown account: {account_id or '(none configured)'}")
    return account_id


# =============================================================================
# Commands
# =============================================================================

async def run_sync(config: Config, account_id: str | None, background: bool = True) -> int:
    """Sync the active account, then cascade through the others."""
    async with open_state(config) as state:
        account_id = _pick_account(state, account_id)
        account = state.accounts[account_id]
        state.set_active(account_id, INBOX)

        manager = PipelineManager(state)
        manager.on_progress = _print_progress
        monitor = ConnectivityMonitor(
            TcpProbe.from_config(config.connectivity),
            manager,
            interval=config.connectivity.interval_seconds,
        )
        await monitor.start()

        try:
            try:
                state.set_mailboxes(account_id, await state.transport.fetch_mailboxes(account))
            except Exception as e:
                logger.warning(f"Could not list mailboxes for {account.email}: {e}")

            index = state.index_for(account_id, INBOX)
            await index.load_cached()
            await index.reload()
            await state.refresh_saved_ids(account_id, INBOX)

            pipeline = await manager.start_active_account_pipeline(account_id)
            if pipeline is None:
                for failed_id, failure in manager.get_errors().items():
                    print(f"{failed_id}: {failure.kind.value}: {failure.message}", file=sys.stderr)
                return 1

            if pipeline.state.is_running:
                await pipeline.wait_for_complete()

            if background:
                await manager.wait_background()
        finally:
            manager.destroy_all()
            await manager.drain()
            await monitor.stop()

        for failed_id, failure in manager.get_errors().items():
            print(f"{failed_id}: {failure.kind.value}: {failure.message}", file=sys.stderr)
        print(f"Cached {len(state.cache)} bodies ({state.cache.total_size_mb:.1f} MB in memory)")
        return 0


async def run_threads(config: Config, account_id: str, mailbox: str, limit: int) -> int:
    """Print threads built from the cached header list of a mailbox."""
    async with open_state(config) as state:
        account_id = _pick_account(state, account_id)
        cached = await state.store.get_email_headers(account_id, mailbox)
        if cached is None:
            print(f"No cached headers for {account_id}/{mailbox}; run 'sync' first", file=sys.stderr)
            return 1

        for thread in build_threads(cached.emails)[:limit]:
            date = thread.end_date.strftime("%Y-%m-%d %H:%M") if thread.end_date else "-"
            unread = f" ({thread.unread_count} unread)" if thread.unread_count else ""
            print(f"{date}  [{len(thread):>3}] {thread.subject}{unread}")
        return 0


async def run_correspondents(config: Config, account_id: str, sent_mailbox: str) -> int:
    """Print the chat-view grouping (inbox plus sent) of an account."""
    async with open_state(config) as state:
        account_id = _pick_account(state, account_id)
        account = state.accounts[account_id]

        inbox = await state.store.get_email_headers(account_id, INBOX)
        if inbox is None:
            print(f"No cached headers for {account_id}; run 'sync' first", file=sys.stderr)
            return 1
        state.index_for(account_id, INBOX).hydrate(inbox.emails, inbox.total)

        sent = await state.store.get_email_headers(account_id, sent_mailbox)
        if sent is not None:
            state.set_sent_headers(account_id, sent.emails)

        groups = group_by_correspondent(state.conversation_messages(account_id), account.email)
        ordered = sorted(
            groups.values(),
            key=lambda c: c.emails[-1].sort_date,
            reverse=True,
        )
        for correspondent in ordered:
            last = correspondent.last_message
            subject = last.subject if last else ""
            unread = f" ({correspondent.unread_count} unread)" if correspondent.unread_count else ""
            print(f"{correspondent.name} <{correspondent.email}>  [{len(correspondent.emails)}]{unread}  {subject}")
        return 0


def _print_progress(account_id: str, state: PipelineState) -> None:
    if state.total:
        print(
            f"\r{account_id}: {state.phase.value} {state.completed}/{state.total} "
            f"(queued {state.queued}, failed {state.failed})",
            end="",
            file=sys.stderr,
            flush=True,
        )


# =============================================================================
# CLI Entry Point
# =============================================================================

def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments namespace.
    """
    parser = argparse.ArgumentParser(
        prog=__app_name__,
        description="Mailmirror: local-first mail sync and caching engine",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    parser.add_argument(
        "--paths",
        action="store_true",
        help="Print configuration paths and exit",
    )

    parser.add_argument(
        "--config",
        type=Path,
        help="Path to config file (default: XDG config location)",
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug mode (verbose logging)",
    )

    commands = parser.add_subparsers(dest="command")

    sync = commands.add_parser("sync", help="Cache an account, then the others")
    sync.add_argument("account", nargs="?", help="Account id (default: default_account)")
    sync.add_argument(
        "--no-background",
        action="store_true",
        help="Only sync the given account",
    )

    threads = commands.add_parser("threads", help="Print threads from cached headers")
    threads.add_argument("account", help="Account id")
    threads.add_argument("--mailbox", default=INBOX, help="Mailbox (default: INBOX)")
    threads.add_argument("--limit", type=int, default=50, help="Threads to print (default: 50)")

    correspondents = commands.add_parser("correspondents", help="Print the chat-view grouping")
    correspondents.add_argument("account", help="Account id")
    correspondents.add_argument("--sent-mailbox", default="Sent", help="Sent mailbox (default: Sent)")

    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """
    Main entry point for mailmirror.

    This function:
        1. Parses command-line arguments
        2. Handles special commands (--paths, --version)
        3. Loads configuration
        4. Runs the requested command

    Returns:
        Exit code (0 for success, non-zero for errors).
    """
    args = parse_args(argv)

    if args.paths:
        print_paths()
        return 0

    setup_logging(args.debug)

    try:
        config = Config.load(args.config)
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 1

    try:
        if args.command == "sync":
            return asyncio.run(run_sync(config, args.account, background=not args.no_background))
        if args.command == "threads":
            return asyncio.run(run_threads(config, args.account, args.mailbox, args.limit))
        if args.command == "correspondents":
            return asyncio.run(run_correspondents(config, args.account, args.sent_mailbox))
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130

    print_paths()
    return 0


if __name__ == "__main__":
    sys.exit(main())
