#!/usr/bin/env python3
"""
chatline CLI: streaming chat against any OpenAI-compatible endpoint,
with a conversation log that survives restarts.

    COMMAND         ALIASES         WHAT IT DOES
    -------         -------         ----------------------------------
    chat            talk            Interactive streaming dialogue
    polish          fix             Polish a piece of text (one-shot)
    list            ls              List stored conversations
    show            cat             Print one conversation
    dump            export          Export conversations to JSON
    clear           wipe            Delete every conversation
    tap             log, tail       Watch the wire log
    flash           info, config    Show config and storage at a glance
"""

import argparse
import asyncio
import contextlib
import json
import signal
import sys
import threading

__version__ = "0.3.0"

C_RESET = "\033[0m"
C_DIM = "\033[2m"
C_USER = "\033[96m"
C_ASSISTANT = "\033[93m"
C_ERROR = "\033[91m"

CHAT_HELP = """  /new        start a new conversation
  /list       list conversations
  /use N      switch to conversation N (from /list)
  /delete     delete the active conversation
  /quit       leave (Ctrl+D works too)
  Ctrl+C while a reply is streaming stops it."""


def _load_cfg(args):
    from chatline.config import get_config, load_config, setup_logging

    cfg = load_config(args.config) if getattr(args, "config", None) else get_config()
    if getattr(args, "verbose", False):
        cfg["logging"]["level"] = "DEBUG"
    setup_logging(cfg)
    return cfg


def _print_conversations(store):
    convs = store.conversations
    if not convs:
        print("  No conversations yet.")
        return
    for i, conv in enumerate(convs, 1):
        marker = "●" if conv.id == store.active_conversation_id else " "
        print(f"  {marker} [{i}] {conv.title}  {C_DIM}({len(conv.messages)} msgs, {conv.updated_at[:19]}){C_RESET}")


def _pick(store, index: int | None):
    if index is None:
        return store.get_active_conversation()
    convs = store.conversations
    if 1 <= index <= len(convs):
        return convs[index - 1]
    return None


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def read_line(prompt: str) -> asyncio.Future:
    """
    input() on a daemon thread. Cancelling the returned future abandons the
    read, and the thread never holds up interpreter exit.
    """
    loop = asyncio.get_running_loop()
    future = loop.create_future()

    def settle(line, error):
        if future.done():
            return
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(line)

    def worker():
        try:
            line, error = input(prompt), None
        except Exception as e:
            line, error = None, e
        # the loop may be gone if the read was abandoned at shutdown
        with contextlib.suppress(RuntimeError):
            loop.call_soon_threadsafe(settle, line, error)

    threading.Thread(target=worker, name="chatline-input", daemon=True).start()
    return future


async def _chat(cfg):
    from chatline.app import open_app

    async with open_app(cfg) as app:
        store, session = app.store, app.session
        active = store.get_active_conversation()
        print(f"  Model: {cfg['dialogue']['model']}  @ {cfg['dialogue']['api_url']}")
        if active:
            print(f"  Continuing: {active.title}  {C_DIM}(/new for a fresh one, /help for commands){C_RESET}")
        print()

        pending: dict[str, asyncio.Future] = {}

        def on_sigint():
            # Ctrl+C stops a streaming reply, otherwise it leaves the prompt
            if session.is_streaming:
                session.stop()
            elif "read" in pending and not pending["read"].done():
                pending["read"].cancel()

        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, on_sigint)
        except NotImplementedError:
            pass
        try:
            await _repl(store, session, pending)
        finally:
            try:
                loop.remove_signal_handler(signal.SIGINT)
            except NotImplementedError:
                pass


async def _repl(store, session, pending: dict):
    while True:
        pending["read"] = read_line(f"{C_USER}you ›{C_RESET} ")
        try:
            line = await pending["read"]
        except (EOFError, KeyboardInterrupt, asyncio.CancelledError):
            print()
            return

        text = line.strip()
        if not text:
            continue
        if text in ("/quit", "/exit"):
            return
        if text == "/help":
            print(CHAT_HELP)
            continue
        if text == "/new":
            await store.create_conversation()
            print("  New conversation.")
            continue
        if text == "/list":
            _print_conversations(store)
            continue
        if text.startswith("/use"):
            try:
                conv = _pick(store, int(text.split()[1]))
            except (IndexError, ValueError):
                conv = None
            if conv is None:
                print("  Usage: /use N  (see /list)")
            else:
                store.set_active_conversation(conv.id)
                print(f"  Switched to: {conv.title}")
            continue
        if text == "/delete":
            if store.active_conversation_id:
                await store.delete_conversation(store.active_conversation_id)
                print("  Deleted.")
            continue

        print(f"{C_ASSISTANT}bot ›{C_RESET} ", end="", flush=True)
        unsubscribe = session.streaming.subscribe(_echo_delta)
        try:
            result = await session.send_message(text)
        finally:
            unsubscribe()
        if result.cancelled:
            print(f"\n  {C_DIM}[stopped]{C_RESET}")
        elif not result.ok:
            print(f"{C_ERROR}Error: {result.error}{C_RESET}")
        else:
            print()


def _echo_delta(text: str, previous: str):
    # streaming channel carries the accumulated text; print only the new tail
    if text.startswith(previous) and len(text) > len(previous):
        print(text[len(previous):], end="", flush=True)


def cmd_chat(args):
    """Interactive streaming dialogue."""
    asyncio.run(_chat(_load_cfg(args)))


def cmd_polish(args):
    """Polish a piece of text and stream the result."""
    from chatline.client import CompletionClient
    from chatline.polish import polish_expression

    cfg = _load_cfg(args)
    text = " ".join(args.text) if args.text else sys.stdin.read()

    async def run():
        async with CompletionClient(timeout=float(cfg["http"]["timeout"])) as client:
            return await polish_expression(
                client,
                cfg["polish"],
                text,
                on_chunk=lambda chunk: print(chunk, end="", flush=True),
            )

    result = asyncio.run(run())
    if result.ok:
        print()
    else:
        print(f"  {C_ERROR}✗  {result.error}{C_RESET}")
        sys.exit(1)


def _with_store(args, fn):
    from chatline.app import open_app

    cfg = _load_cfg(args)

    async def run():
        async with open_app(cfg) as app:
            return await fn(app)

    return asyncio.run(run())


def cmd_list(args):
    """List stored conversations, most recent first."""
    async def run(app):
        _print_conversations(app.store)

    _with_store(args, run)


def cmd_show(args):
    """Print one conversation."""
    async def run(app):
        conv = _pick(app.store, args.index)
        if conv is None:
            print("  No such conversation.")
            return
        print(f"  {conv.title}  {C_DIM}(created {conv.created_at[:19]}){C_RESET}")
        print("  " + "─" * 56)
        for msg in conv.messages:
            color = C_USER if msg.role == "user" else C_ASSISTANT
            print(f"\n  {color}{msg.role.upper()}{C_RESET}  {C_DIM}{msg.timestamp[:19]}{C_RESET}")
            for line in msg.content.split("\n"):
                print(f"    {line}")

    _with_store(args, run)


def cmd_dump(args):
    """Export conversations to JSON."""
    async def run(app):
        data = [c.to_dict() for c in app.store.conversations]
        with open(args.output, "w") as f:
            json.dump(data, f, indent=2 if args.pretty else None, ensure_ascii=False)
        print(f"  📦 Dumped {len(data)} conversations to {args.output}")

    _with_store(args, run)


def cmd_clear(args):
    """Delete every stored conversation."""
    if not args.yes:
        answer = input("  Delete ALL conversations? [y/N] ").strip().lower()
        if answer not in ("y", "yes"):
            print("  Nothing deleted.")
            return

    async def run(app):
        count = len(app.store.conversations)
        await app.store.clear_all_conversations()
        print(f"  Cleared {count} conversations.")

    _with_store(args, run)


def cmd_tap(args):
    """Watch the wire log."""
    from chatline.wiretap import live_tap

    cfg = _load_cfg(args)
    live_tap(
        log_path=args.log or cfg["wiretap"]["path"],
        follow=not args.no_follow,
        last_n=args.last,
        role_filter=args.role,
        raw=args.raw,
    )


def cmd_flash(args):
    """Show config and storage at a glance."""
    def _key_status(section: dict) -> str:
        return "set" if section.get("api_key") else f"{C_ERROR}missing{C_RESET}"

    async def run(app):
        cfg = app.cfg
        d, p, s = cfg["dialogue"], cfg["polish"], cfg["storage"]
        print("  Configuration")
        print(f"  ├─ Dialogue:  {d['model']} @ {d['api_url']} (key {_key_status(d)})")
        print(f"  ├─ Polish:    {p['model']} @ {p['api_url']} (key {_key_status(p)})")
        print(f"  ├─ History:   {d['max_history_messages']} pairs")
        print(f"  ├─ Timeout:   {cfg['http']['timeout']}s")
        print(f"  ├─ Storage:   {s['backend']} ({s['path']})")
        print(f"  └─ Wiretap:   {'on → ' + cfg['wiretap']['path'] if cfg['wiretap'].get('enabled') else 'off'}")

        convs = app.store.conversations
        messages = sum(len(c.messages) for c in convs)
        print()
        print("  Storage")
        print(f"  ├─ Conversations: {len(convs)}")
        print(f"  └─ Messages:      {messages}")

    _with_store(args, run)


# ---------------------------------------------------------------------------
# Parser with aliases
# ---------------------------------------------------------------------------

def _add_command(subparsers, names, help_text, func, setup_fn=None):
    """Register a command under its name and aliases."""
    p = subparsers.add_parser(names[0], help=help_text, aliases=names[1:])
    p.set_defaults(func=func)
    p.add_argument("--config", "-c", default=None, help="Path to config.yaml")
    p.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    if setup_fn:
        setup_fn(p)
    return p


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chatline",
        description="chatline: streaming chat with a conversation log that survives restarts.",
        epilog="Run 'chatline <command> --help' for command-specific options.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version", "-V", action="version",
        version=f"chatline {__version__}",
    )

    sub = parser.add_subparsers(dest="command", metavar="<command>")

    _add_command(sub, ["chat", "talk"], "Interactive streaming dialogue", cmd_chat)

    def setup_polish(p):
        p.add_argument("text", nargs="*", help="Text to polish (default: read stdin)")
    _add_command(sub, ["polish", "fix"], "Polish a piece of text", cmd_polish, setup_polish)

    _add_command(sub, ["list", "ls"], "List stored conversations", cmd_list)

    def setup_show(p):
        p.add_argument("index", nargs="?", type=int, default=None,
                       help="Conversation number from 'list' (default: active)")
    _add_command(sub, ["show", "cat"], "Print one conversation", cmd_show, setup_show)

    def setup_dump(p):
        p.add_argument("--output", "-o", default="conversations_export.json", help="Output file")
        p.add_argument("--pretty", action="store_true", help="Pretty-print JSON")
    _add_command(sub, ["dump", "export"], "Export conversations to JSON", cmd_dump, setup_dump)

    def setup_clear(p):
        p.add_argument("--yes", "-y", action="store_true", help="Don't ask for confirmation")
    _add_command(sub, ["clear", "wipe"], "Delete every conversation", cmd_clear, setup_clear)

    def setup_tap(p):
        p.add_argument("--log", default=None, help="Path to wire.jsonl (default: from config)")
        p.add_argument("--last", "-n", type=int, default=20, help="Show last N entries before following")
        p.add_argument("--role", "-r", choices=["user", "assistant", "system", "error"],
                       default=None, help="Filter by role")
        p.add_argument("--no-follow", action="store_true", help="Don't follow, just show last entries")
        p.add_argument("--raw", action="store_true", help="Raw JSONL output, no formatting")
    _add_command(sub, ["tap", "log", "tail"], "Watch the wire log", cmd_tap, setup_tap)

    _add_command(sub, ["flash", "info", "config"], "Show config and storage at a glance", cmd_flash)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return

    args.func(args)


if __name__ == "__main__":
    main()
