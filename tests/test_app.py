# =============================================================================
# Command Line Tests
# =============================================================================

import asyncio

import pytest

from mailmirror import __version__
from mailmirror import config as config_module
from mailmirror.app import main, parse_args
from mailmirror.config import Config
from mailmirror.core import Account, Address
from mailmirror.storage import Database, Repository

from conftest import make_header


@pytest.fixture
def xdg(monkeypatch, temp_dir):
    """Point every XDG directory into a temp dir and stub out the keyring."""
    for var in ("XDG_CONFIG_HOME", "XDG_DATA_HOME", "XDG_CACHE_HOME", "XDG_STATE_HOME"):
        monkeypatch.setenv(var, str(temp_dir / var.lower()))
    monkeypatch.setattr(config_module.keyring, "get_password", lambda service, user: "secret")
    return temp_dir


def _write_config(path):
    config = Config()
    config.default_account = "personal"
    config.accounts["personal"] = Account(id="personal", email="me@example.com", imap_host="imap.example.com")
    config.save(path)


def _seed(headers, mailbox="INBOX"):
    async def seed():
        async with Database() as db:
            await Repository(db).save_email_headers("personal", mailbox, headers, len(headers))

    asyncio.run(seed())


def test_parse_sync_defaults():
    args = parse_args(["sync"])
    assert args.command == "sync"
    assert args.account is None
    assert not args.no_background
    assert not args.debug


def test_parse_threads_options(tmp_path):
    args = parse_args(["--debug", "--config", str(tmp_path / "c.toml"), "threads", "work", "--limit", "5"])
    assert args.debug
    assert args.config == tmp_path / "c.toml"
    assert (args.account, args.mailbox, args.limit) == ("work", "INBOX", 5)


def test_version(capsys):
    with pytest.raises(SystemExit):
        parse_args(["--version"])
    assert __version__ in capsys.readouterr().out


def test_paths_prints_locations(xdg, capsys):
    assert main(["--paths"]) == 0
    out = capsys.readouterr().out
    assert "config.toml" in out
    assert "mailmirror.db" in out


def test_bad_config_exits_nonzero(xdg, capsys):
    path = xdg / "broken.toml"
    path.write_text("not = = toml")
    assert main(["--config", str(path), "threads", "personal"]) == 1
    assert "Config error" in capsys.readouterr().err


def test_threads_command_prints_cached_threads(xdg, capsys):
    path = xdg / "config.toml"
    _write_config(path)
    _seed([
        make_header(3, message_id="<b@x>", in_reply_to="<a@x>", subject="Re: Plans"),
        make_header(2, message_id="<c@x>", subject="Invoice"),
        make_header(1, message_id="<a@x>", subject="Plans"),
    ])

    assert main(["--config", str(path), "threads", "personal"]) == 0

    lines = capsys.readouterr().out.strip().splitlines()
    assert len(lines) == 2
    assert "[  2] Plans" in lines[0]
    assert "Invoice" in lines[1]


def test_threads_without_cache_fails(xdg, capsys):
    path = xdg / "config.toml"
    _write_config(path)
    assert main(["--config", str(path), "threads", "personal"]) == 1
    assert "run 'sync' first" in capsys.readouterr().err


def test_unknown_account_is_an_error(xdg, capsys):
    path = xdg / "config.toml"
    _write_config(path)
    assert main(["--config", str(path), "threads", "nobody"]) == 1
    assert "Unknown account" in capsys.readouterr().err


def test_correspondents_command(xdg, capsys):
    path = xdg / "config.toml"
    _write_config(path)
    _seed([make_header(2, from_=Address("bob@example.com", "Bob")), make_header(1)])
    _seed(
        [make_header(9, mailbox="Sent", from_=Address("me@example.com"), to=[Address("bob@example.com", "Bob")])],
        mailbox="Sent",
    )

    assert main(["--config", str(path), "correspondents", "personal"]) == 0

    lines = capsys.readouterr().out.strip().splitlines()
    assert lines[0].startswith("Bob <bob@example.com>  [2]")
    assert lines[1].startswith("Alice <alice@example.com>  [1]")
