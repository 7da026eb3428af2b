from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

from . import __version__
from .runtime.config import configure_logging, load_runtime_config
from .runtime.errors import ConfigError, error_payload

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CONFIG_ERROR = 5


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="loom",
        description="Streaming conversation runtime.",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "--project-root",
        default=".",
        help="Directory holding .loom/config (default: current directory).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    replay_parser = subparsers.add_parser("replay", help="Replay a recorded stream and print the conversation.")
    replay_parser.add_argument("events", help="JSONL file with one transport event per line.")
    replay_parser.add_argument("--message", default="(replay)", help="User message that opened the stream.")
    replay_parser.add_argument("--conversation-id", default=None, help="Conversation id to replay under.")
    replay_parser.add_argument(
        "--show-messages",
        action="store_true",
        help="Also print every outbound message the surface received.",
    )
    replay_parser.set_defaults(func=_cmd_replay)

    config_parser = subparsers.add_parser("config", help="Configuration utilities.")
    config_subparsers = config_parser.add_subparsers(dest="config_cmd", required=True)
    config_show_parser = config_subparsers.add_parser("show", help="Print the effective runtime config.")
    config_show_parser.set_defaults(func=_cmd_config_show)

    return parser


def _print_error(exc: BaseException) -> None:
    payload = error_payload(exc)
    print(f"{payload['code']}: {payload['message']}", file=sys.stderr)


def _cmd_config_show(args: argparse.Namespace) -> int:
    try:
        config = load_runtime_config(Path(args.project_root).expanduser())
    except ConfigError as e:
        _print_error(e)
        return EXIT_CONFIG_ERROR
    print(json.dumps(config.model_dump(), ensure_ascii=False, indent=2))
    return EXIT_OK


def _cmd_replay(args: argparse.Namespace) -> int:
    from .runtime.engine import ConversationEngine
    from .runtime.memory import InMemoryDiffApplier, RecordedBackend
    from .runtime.surface import MemorySurface

    try:
        config = load_runtime_config(Path(args.project_root).expanduser())
    except ConfigError as e:
        _print_error(e)
        return EXIT_CONFIG_ERROR
    configure_logging(config.log_level)

    events_path = Path(args.events).expanduser()
    try:
        backend = RecordedBackend.from_jsonl(events_path)
    except (OSError, json.JSONDecodeError) as e:
        print(f"Failed to read {events_path}: {e}", file=sys.stderr)
        return EXIT_ERROR

    surface = MemorySurface()
    engine = ConversationEngine(backend=backend, applier=InMemoryDiffApplier(), surface=surface, config=config)

    async def _run() -> None:
        await engine.send_message(args.message, conversation_id=args.conversation_id)
        await engine.drain()

    asyncio.run(_run())

    out = {"session": engine.session.to_dict()}
    if args.show_messages:
        out["messages"] = surface.messages
    print(json.dumps(out, ensure_ascii=False, indent=2))
    return EXIT_OK if engine.session.error is None else EXIT_ERROR


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        func = getattr(args, "func")
        return int(func(args))
    except KeyboardInterrupt:
        print("Interrupted.", file=sys.stderr)
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
