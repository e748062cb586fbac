"""
Tests for the CLI: parser wiring and the store-backed commands.
Each test points the CLI at a throwaway config with a JSON-file store.
"""

import asyncio
import json
import threading

import pytest

from chatline.cli import __version__, build_parser, main, read_line
from chatline.config import reset_config
from chatline.storage.conversation_store import STORAGE_KEY


@pytest.fixture(autouse=True)
def fresh_config():
    reset_config()
    yield
    reset_config()


def _conversation(cid, title, *contents):
    return {
        "id": cid,
        "title": title,
        "messages": [
            {
                "id": f"{cid}-{i}",
                "role": "user" if i % 2 == 0 else "assistant",
                "content": text,
                "timestamp": "2026-01-01T12:00:00+00:00",
            }
            for i, text in enumerate(contents)
        ],
        "created_at": "2026-01-01T12:00:00+00:00",
        "updated_at": "2026-01-01T12:00:00+00:00",
    }


@pytest.fixture
def store_file(tmp_path):
    path = tmp_path / "store.json"
    convs = [
        _conversation("c2", "Weekend plans", "any ideas?", "go hiking"),
        _conversation("c1", "Old chat", "hello"),
    ]
    path.write_text(json.dumps({STORAGE_KEY: json.dumps(convs)}))
    return path


@pytest.fixture
def config_file(tmp_path, store_file):
    path = tmp_path / "config.yaml"
    path.write_text(
        "storage:\n"
        "  backend: json\n"
        f"  path: {store_file}\n"
        "wiretap:\n"
        f"  path: {tmp_path / 'wire.jsonl'}\n"
        "logging:\n"
        "  level: WARNING\n"
    )
    return str(path)


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("alias,command", [
    ("talk", "chat"),
    ("fix", "polish"),
    ("ls", "list"),
    ("cat", "show"),
    ("export", "dump"),
    ("wipe", "clear"),
    ("tail", "tap"),
    ("info", "flash"),
])
def test_aliases_resolve_to_same_handler(alias, command):
    parser = build_parser()
    assert parser.parse_args([alias]).func is parser.parse_args([command]).func


def test_show_index_is_optional_int():
    parser = build_parser()
    assert parser.parse_args(["show"]).index is None
    assert parser.parse_args(["show", "2"]).index == 2


def test_version(capsys):
    with pytest.raises(SystemExit):
        build_parser().parse_args(["--version"])
    assert __version__ in capsys.readouterr().out


def test_no_command_prints_help(capsys):
    main([])
    assert "usage" in capsys.readouterr().out.lower()


# ---------------------------------------------------------------------------
# Store-backed commands
# ---------------------------------------------------------------------------

def test_list_shows_conversations_in_order(config_file, capsys):
    main(["list", "-c", config_file])
    out = capsys.readouterr().out
    assert out.index("Weekend plans") < out.index("Old chat")
    assert "● [1] Weekend plans" in out


def test_show_prints_messages(config_file, capsys):
    main(["show", "1", "-c", config_file])
    out = capsys.readouterr().out
    assert "any ideas?" in out
    assert "go hiking" in out


def test_show_out_of_range(config_file, capsys):
    main(["show", "9", "-c", config_file])
    assert "No such conversation" in capsys.readouterr().out


def test_dump_writes_json(config_file, tmp_path, capsys):
    out_path = tmp_path / "export.json"
    main(["dump", "-c", config_file, "-o", str(out_path)])
    data = json.loads(out_path.read_text())
    assert [c["id"] for c in data] == ["c2", "c1"]
    assert "Dumped 2 conversations" in capsys.readouterr().out


def test_clear_with_yes_empties_store(config_file, store_file, capsys):
    main(["clear", "-y", "-c", config_file])
    assert "Cleared 2 conversations" in capsys.readouterr().out
    stored = json.loads(store_file.read_text())
    assert json.loads(stored[STORAGE_KEY]) == []


def test_clear_declined_keeps_store(config_file, store_file, monkeypatch, capsys):
    monkeypatch.setattr("builtins.input", lambda prompt="": "n")
    main(["clear", "-c", config_file])
    assert "Nothing deleted" in capsys.readouterr().out
    stored = json.loads(store_file.read_text())
    assert len(json.loads(stored[STORAGE_KEY])) == 2


def test_flash_summarizes(config_file, capsys):
    main(["flash", "-c", config_file])
    out = capsys.readouterr().out
    assert "Conversations: 2" in out
    assert "Messages:      3" in out
    assert "json" in out


def test_polish_without_key_exits_nonzero(config_file, capsys):
    with pytest.raises(SystemExit) as exc:
        main(["polish", "-c", config_file, "some", "text"])
    assert exc.value.code == 1
    assert "API key not configured" in capsys.readouterr().out


def test_tap_reads_wire_log(config_file, tmp_path, capsys):
    (tmp_path / "wire.jsonl").write_text(
        json.dumps({"ts": "2026-01-01T00:00:00+00:00", "dir": "request", "role": "user", "content": "ping"}) + "\n"
    )
    main(["tap", "-c", config_file, "--no-follow", "--raw"])
    assert json.loads(capsys.readouterr().out)["content"] == "ping"


# ---------------------------------------------------------------------------
# Chat prompt
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_read_line_returns_typed_text(monkeypatch):
    monkeypatch.setattr("builtins.input", lambda prompt="": "hello")
    assert await read_line("> ") == "hello"


@pytest.mark.asyncio
async def test_read_line_passes_eof_through(monkeypatch):
    def eof(prompt=""):
        raise EOFError

    monkeypatch.setattr("builtins.input", eof)
    with pytest.raises(EOFError):
        await read_line("> ")


@pytest.mark.asyncio
async def test_read_line_can_be_abandoned(monkeypatch):
    typed = threading.Event()
    returned = threading.Event()

    def blocking_input(prompt=""):
        typed.wait(5)
        returned.set()
        return "late"

    monkeypatch.setattr("builtins.input", blocking_input)
    pending = read_line("> ")
    pending.cancel()
    with pytest.raises(asyncio.CancelledError):
        await pending

    # the late line lands on an already-cancelled future and is dropped
    typed.set()
    await asyncio.to_thread(returned.wait, 5)
    await asyncio.sleep(0.01)
    assert pending.cancelled()


def test_chat_commands_then_quit(config_file, monkeypatch, capsys):
    lines = iter(["/list", "/use 2", "/new", "/quit"])
    monkeypatch.setattr("builtins.input", lambda prompt="": next(lines))

    main(["chat", "-c", config_file])

    out = capsys.readouterr().out
    assert "Weekend plans" in out
    assert "Switched to: Old chat" in out
    assert "New conversation." in out


def test_chat_ends_on_eof(config_file, monkeypatch, capsys):
    def eof(prompt=""):
        raise EOFError

    monkeypatch.setattr("builtins.input", eof)
    main(["chat", "-c", config_file])
    assert "Continuing: Weekend plans" in capsys.readouterr().out
