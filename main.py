#!/usr/bin/env python3
"""Analyst chat: main entry point.

Chats with a code-writing model that analyses the tables in a directory.
The model's Python runs in a local sandbox; only its printed answer is
shown.

Usage:
    python main.py --endpoint http://localhost:11434/v1 --model qwen2.5-coder
    python main.py --dir ./data "How many rows are in sales.csv?"   # Single-command mode
    python main.py --endpoint https://api.openai.com/v1 --list-models
    python main.py --verbose                # Show code and sandbox results
    python main.py --no-color               # Disable ANSI colors

Slash commands:
    /new                     - Start a new conversation
    /exec <file.py>          - Run a script from the analysis directory (no LLM)
    /dump_llm_instructions   - Write the last LLM request to ai_chat_output/
    /help                    - Show available commands
    /quit, /exit             - Exit
Ctrl+C cancels the running turn; at the prompt it exits.
"""

import argparse
import os
import sys
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from concurrent.futures import TimeoutError as FutureTimeoutError
from pathlib import Path

# readline is optional (not available on Windows without pyreadline3)
try:
    import readline
    _READLINE_AVAILABLE = True
except ImportError:
    _READLINE_AVAILABLE = False

import config
from analyst import __version__
from analyst.chat_config import CONFIG_FIELD_SPECS, ChatConfig
from analyst.event_bus import (
    CODE_EXECUTION_END,
    CODE_EXECUTION_START,
    LLM_REQUEST_START,
    LLM_RETRY,
    DebugLogListener,
    EventBus,
    EventLogWriter,
    set_event_bus,
)
from analyst.logging import attach_log_file, get_current_log_path, get_log_dir, setup_logging
from analyst.model_listing import fetch_models
from analyst.session import ChatSession
from analyst.types import EndpointSettings

# ---- ANSI colors ----

_USE_COLOR = True
_VERBOSE = False


def _c(code: str, text: str) -> str:
    if not _USE_COLOR:
        return text
    return f"\033[{code}m{text}\033[0m"


def dim(text: str) -> str:
    return _c("2", text)


def cyan(text: str) -> str:
    return _c("36", text)


def green(text: str) -> str:
    return _c("32", text)


def yellow(text: str) -> str:
    return _c("33", text)


def red(text: str) -> str:
    return _c("31", text)


def bold(text: str) -> str:
    return _c("1", text)


# ---- Readline ----

def _history_path() -> str:
    return os.path.join(str(config.get_data_dir()), ".cli_history")


_SLASH_COMMANDS = [
    ("/dump_llm_instructions", "Write the last LLM request to ai_chat_output/"),
    ("/exec",                  "Run a .py file from the analysis directory (no LLM)"),
    ("/exit",                  "Exit (alias for /quit)"),
    ("/help",                  "Show available commands"),
    ("/new",                   "Start a new conversation"),
    ("/quit",                  "Exit"),
]


def _slash_completer(text, state):
    """Readline completer for slash commands."""
    if text.startswith("/"):
        matches = [c[0] for c in _SLASH_COMMANDS if c[0].startswith(text)]
    else:
        matches = []
    if state < len(matches):
        return matches[state]
    return None


def setup_readline():
    if not _READLINE_AVAILABLE:
        return
    readline.set_history_length(500)
    readline.set_completer(_slash_completer)
    readline.set_completer_delims(" \t\n")
    readline.parse_and_bind("tab: complete")
    try:
        readline.read_history_file(_history_path())
    except (FileNotFoundError, OSError):
        pass


def save_readline():
    if not _READLINE_AVAILABLE:
        return
    try:
        path = _history_path()
        os.makedirs(os.path.dirname(path), exist_ok=True)
        readline.write_history_file(path)
    except OSError:
        pass


# ---- Event display ----

def display_event(event):
    """Render progress events from the session's event bus."""
    if event.type == LLM_REQUEST_START:
        print(dim("  [Thinking...]"))

    elif event.type == LLM_RETRY:
        print(yellow(f"  {event.summary}"))

    elif event.type == CODE_EXECUTION_START:
        if _VERBOSE:
            print(dim("  [Code]"))
            for line in event.data.get("code", "").splitlines():
                print(dim(f"    {line}"))

    elif event.type == CODE_EXECUTION_END:
        result = event.data.get("result", {})
        if result.get("success"):
            marker = green("ok")
            if result.get("continue_thinking_called"):
                marker += dim(" (continuing)")
        else:
            marker = red(result.get("error_type") or "error")
        print(dim("  [Run -> ") + marker + dim("]"))
        if _VERBOSE and not result.get("success") and result.get("message"):
            print(dim(f"    {result['message']}"))


# ---- Commands ----

def cmd_help():
    print()
    print(bold("Slash commands:"))
    print(f"  {cyan('/new')}                     Start a new conversation")
    print(f"  {cyan('/exec <file.py>')}          Run a script from the analysis directory (no LLM)")
    print(f"  {cyan('/dump_llm_instructions')}   Write the last LLM request to ai_chat_output/")
    print(f"  {cyan('/quit')}                    Exit")
    print(f"  {cyan('/help')}                    Show this message")
    print()
    print(dim("  Anything else is sent as a chat message. Ctrl+C cancels a running turn."))


def cmd_list_models(endpoint: str, api_key: str) -> int:
    result = fetch_models(endpoint, api_key)
    if not result.success:
        print(red(f"Error: {result.error}"))
        return 1
    for name in sorted(result.models):
        print(name)
    return 0


def print_welcome(endpoint: EndpointSettings, allowed_dir: Path):
    print()
    print("=" * 60)
    print(f"  Analyst chat {__version__}")
    print("=" * 60)
    print()
    print(f"  Endpoint:  {endpoint.endpoint_url}")
    print(f"  Model:     {endpoint.model}")
    print(f"  Directory: {allowed_dir}")
    print(f"  Log:       {get_current_log_path()}")
    print()
    print("Examples:")
    print("  'Which files can you see?'")
    print("  'Summarize the columns of sales.csv'")
    print("  'Monthly revenue totals for 2024, largest first'")
    print()
    print("Type /help for available commands.")
    print("-" * 60)


def run_turn(pool: ThreadPoolExecutor, session: ChatSession, message: str) -> None:
    """Run one turn on the worker thread; Ctrl+C cancels it."""
    future = pool.submit(session.send_message, message)
    while True:
        try:
            result = future.result(timeout=0.1)
            break
        except FutureTimeoutError:
            continue
        except KeyboardInterrupt:
            print(yellow("\n  Cancelling..."))
            session.cancel()

    if result.success:
        print()
        print(result.text.rstrip("\n"))
    elif result.error == "Cancelled":
        print(yellow("  Cancelled."))
    else:
        label = "Timed out" if result.is_timeout else "Error"
        print(red(f"\n  {label}: {result.error}"))


# ---- Argument parsing ----

def _flag(name: str) -> str:
    return "--" + name.replace("_", "-")


def _config_help() -> str:
    lines = [f"config.json keys ({config.CONFIG_PATH}):"]
    for key, text in config.CONFIG_DESCRIPTIONS.items():
        lines.append(f"  {key}: {text}")
    return "\n".join(lines)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="analyst-chat",
        description="Chat with a code-writing model about the data files in a directory",
        epilog=_config_help(),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "command", nargs="?", default=None,
        help="Single message to send (non-interactive mode)",
    )
    parser.add_argument(
        "--endpoint", default=config.ENDPOINT_URL or None,
        help="OpenAI-compatible base URL (e.g. http://localhost:11434/v1)",
    )
    parser.add_argument("--model", default=config.MODEL or None, help="Model name")
    parser.add_argument(
        "--dir", default=".",
        help="Analysis directory the sandbox may read (default: current directory)",
    )
    parser.add_argument(
        "--api-key", default=None,
        help="API key (default: API_KEY environment variable)",
    )
    for name, spec in CONFIG_FIELD_SPECS.items():
        parser.add_argument(
            _flag(name), dest=name, default=None, metavar="N",
            help=f"{spec.label} ({spec.min}-{spec.max}, default {spec.fallback})",
        )
    parser.add_argument(
        "--temperature", default=None, metavar="T",
        help="Sampling temperature 0-2 (default: provider default)",
    )
    parser.add_argument(
        "--list-models", action="store_true",
        help="List the models the endpoint offers and exit",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Show generated code and debug logging",
    )
    parser.add_argument(
        "--no-color", action="store_true",
        help="Disable ANSI color output",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def chat_config_from_args(args: argparse.Namespace) -> ChatConfig:
    """CLI flags override the "chat" config section; everything is clamped."""
    values = dict(config.get("chat", {}) or {})
    for name in [*CONFIG_FIELD_SPECS, "temperature"]:
        raw = getattr(args, name)
        if raw is not None:
            values[name] = raw
    return ChatConfig.from_values(values)


# ---- Main ----

def main(argv: list[str] | None = None) -> int:
    global _USE_COLOR, _VERBOSE

    parser = build_parser()
    args = parser.parse_args(argv)

    if args.no_color:
        _USE_COLOR = False
    _VERBOSE = args.verbose

    if not args.endpoint:
        parser.error("--endpoint is required (or set endpoint_url in config.json)")
    api_key = config.get_api_key(args.api_key)

    if args.list_models:
        return cmd_list_models(args.endpoint, api_key)

    if not args.model:
        parser.error("--model is required (or set model in config.json)")
    allowed_dir = Path(args.dir).expanduser().resolve()
    if not allowed_dir.is_dir():
        parser.error(f"--dir is not a directory: {allowed_dir}")

    logger = setup_logging(verbose=args.verbose)
    session_id = f"{datetime.now():%Y%m%d_%H%M%S}_{uuid.uuid4().hex[:8]}"
    attach_log_file(session_id)
    bus = EventBus(session_id=session_id)
    set_event_bus(bus)
    bus.subscribe(DebugLogListener(logger))
    bus.subscribe(display_event)

    endpoint = EndpointSettings(endpoint_url=args.endpoint, model=args.model, api_key=api_key)
    session = ChatSession(endpoint, allowed_dir, chat_config_from_args(args), event_bus=bus)
    event_log = EventLogWriter(get_log_dir() / f"events_{session_id}.jsonl")
    bus.subscribe(event_log)

    with ThreadPoolExecutor(max_workers=1, thread_name_prefix="turn") as pool:
        if args.command:
            run_turn(pool, session, args.command)
            event_log.close()
            return 0

        setup_readline()
        print_welcome(endpoint, allowed_dir)
        try:
            while True:
                try:
                    user_input = input(cyan("\n> ")).strip()
                except EOFError:
                    break
                if not user_input:
                    continue

                cmd = user_input.lower()
                if cmd in ("/quit", "/exit", "/q"):
                    break
                if cmd == "/help":
                    cmd_help()
                    continue
                if cmd == "/new":
                    session.reset()
                    print(green("  Started a new conversation."))
                    continue

                # /exec and /dump_llm_instructions are handled by the turn loop
                run_turn(pool, session, user_input)
        except KeyboardInterrupt:
            pass
        finally:
            print()
            save_readline()
            event_log.close()
            print("Goodbye.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
