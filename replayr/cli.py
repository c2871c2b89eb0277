"""
replayr command line

Interactive session:
    python -m replayr connect --protocol tcp --address 127.0.0.1 --port 7
    > hex 48 65 6C 6C 6F
    > ascii hello
    > export replay session.json
    > quit

Replay a recorded session against another endpoint:
    python -m replayr replay session.json --address 10.0.0.5 --port 9000
"""

import argparse
import asyncio
import logging
import sys
import threading
from dataclasses import dataclass
from typing import List, Optional

from .codec import PayloadEncoding
from .config import DEFAULT_CONFIG_FILE, SessionConfig, config_from_dict, load_config, save_config
from .errors import CodecError, EmptyScript, ReplayrError, SendFailed, SessionStateError
from .events import EngineEvent, EventType
from .packet_log import ExportFormat, load_replay_file
from .registry import RegistryConfig, SessionRegistry
from .replay import ReplayOptions
from .session import SessionState

logger = logging.getLogger("Replayr.CLI")

QUIT_WORDS = ("quit", "exit", "close")


def setup_logging(log_level: str = "INFO"):
    """
    Setup logging configuration

    Args:
        log_level: Logging level
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )


@dataclass
class OperatorCommand:
    """One parsed line of operator input"""
    action: str                     # send | export | status | quit
    argument: str = ""
    encoding: PayloadEncoding = PayloadEncoding.HEX
    export_format: Optional[ExportFormat] = None


def parse_command(line: str, default_encoding: PayloadEncoding = PayloadEncoding.HEX) -> OperatorCommand:
    """
    Parse an operator input line

    "hex <digits>" and "ascii <text>" send in that encoding, "export
    human|replay [path]" writes the log, "status" prints the session,
    "quit"/"exit"/"close" ends. Any other line is sent in default_encoding.

    Raises:
        ValueError: malformed export command
    """
    line = line.rstrip("\r\n")
    stripped = line.strip()
    word, _, rest = stripped.partition(" ")
    keyword = word.lower()

    if keyword in QUIT_WORDS and not rest:
        return OperatorCommand(action="quit")
    if keyword == "status" and not rest:
        return OperatorCommand(action="status")
    if keyword == "hex":
        return OperatorCommand(action="send", argument=rest.strip(), encoding=PayloadEncoding.HEX)
    if keyword == "ascii":
        # Keep the text exactly as typed after the keyword
        text = line.lstrip()[len(word) + 1:] if rest else ""
        return OperatorCommand(action="send", argument=text, encoding=PayloadEncoding.ASCII)
    if keyword == "export":
        fmt_word, _, path = rest.strip().partition(" ")
        if not fmt_word:
            raise ValueError("usage: export human|replay [path]")
        return OperatorCommand(
            action="export",
            argument=path.strip(),
            export_format=ExportFormat.parse(fmt_word),
        )
    return OperatorCommand(action="send", argument=line, encoding=default_encoding)


def resolve_config(args: argparse.Namespace) -> SessionConfig:
    """Config file values overridden by command line flags"""
    config = load_config(args.config)
    overrides = {}
    if args.protocol is not None:
        overrides["protocol"] = args.protocol
    if args.address is not None:
        overrides["address"] = args.address
    if args.port is not None:
        overrides["port"] = args.port
    if getattr(args, "initial_payload", None) is not None:
        overrides["initial_payload"] = args.initial_payload
    if getattr(args, "initial_encoding", None) is not None:
        overrides["initial_payload_encoding"] = args.initial_encoding
    if args.connect_timeout is not None:
        overrides["connect_timeout"] = args.connect_timeout
    if not overrides:
        return config
    merged = config.to_dict()
    merged.update(overrides)
    return config_from_dict(merged)


def _print_event(event: EngineEvent) -> None:
    if event.event_type == EventType.PACKET_RECEIVED:
        print(event.entry.format_line(), flush=True)
    elif event.event_type == EventType.SESSION_STATE_CHANGED:
        suffix = f": {event.cause}" if event.cause else ""
        print(f"[{event.session_id}] {event.new_state.value}{suffix}", flush=True)
    elif event.event_type == EventType.REPLAY_PROGRESS:
        print(f"[{event.replay_id}] sent {event.entries_sent}/{event.total}", flush=True)


def _start_stdin_reader(loop: asyncio.AbstractEventLoop) -> "asyncio.Queue[Optional[str]]":
    """Read stdin on a daemon thread; None marks end of input"""
    queue: "asyncio.Queue[Optional[str]]" = asyncio.Queue()

    def reader():
        for line in sys.stdin:
            loop.call_soon_threadsafe(queue.put_nowait, line)
        loop.call_soon_threadsafe(queue.put_nowait, None)

    threading.Thread(target=reader, name="replayr-stdin", daemon=True).start()
    return queue


async def run_connect(args: argparse.Namespace) -> int:
    """Interactive session: stdin commands out, received packets printed"""
    config = resolve_config(args)
    if args.save_config:
        save_config(config, args.config)

    registry = SessionRegistry(
        config=RegistryConfig(connect_timeout=config.connect_timeout),
        name="cli",
    )
    registry.events.subscribe(_print_event)

    session_id = await registry.new_session(config.endpoint(), config.initial_payload_value())
    session = registry.get_session(session_id)
    if not session.is_open:
        return 1

    default_encoding = PayloadEncoding.parse(args.encoding)
    lines = _start_stdin_reader(asyncio.get_running_loop())
    closed = asyncio.ensure_future(session.wait_closed())

    try:
        while session.is_open:
            next_line = asyncio.ensure_future(lines.get())
            done, _ = await asyncio.wait({next_line, closed}, return_when=asyncio.FIRST_COMPLETED)
            if next_line not in done:
                next_line.cancel()
                break
            line = next_line.result()
            if line is None:
                break
            if not line.strip():
                continue

            try:
                command = parse_command(line, default_encoding)
            except ValueError as e:
                print(f"Error: {e}")
                continue

            logger.debug(f"[CLI] {command.action} {command.encoding.value} {command.argument!r}")
            if command.action == "quit":
                break
            if command.action == "status":
                print(session.to_dict())
            elif command.action == "export":
                try:
                    path = registry.export_log_to_file(
                        session_id, command.export_format, command.argument or None
                    )
                    print(f"Exported to {path}")
                except (EmptyScript, OSError) as e:
                    print(f"Export failed: {e}")
            else:
                try:
                    await registry.send_text(session_id, command.argument, command.encoding)
                except CodecError as e:
                    print(f"Invalid input: {e.reason}")
                except (SendFailed, SessionStateError) as e:
                    print(f"Error: {e}")
    finally:
        closed.cancel()
        await registry.shutdown()

    return 1 if session.state == SessionState.FAILED else 0


async def run_replay(args: argparse.Namespace) -> int:
    """Replay a script file against the configured endpoint"""
    script = load_replay_file(args.file)
    config = resolve_config(args)
    options = ReplayOptions(fixed_interval_ms=args.interval_ms, speed=args.speed)

    registry = SessionRegistry(
        config=RegistryConfig(connect_timeout=config.connect_timeout),
        name="cli-replay",
    )
    registry.events.subscribe(_print_event)

    replay_id = registry.start_replay(script, config.endpoint(), options)
    try:
        outcome = await registry.wait_replay(replay_id)
        session = registry.get_replay(replay_id).session

        if args.linger > 0 and session is not None and session.is_open:
            await asyncio.sleep(args.linger)

        if outcome.completed:
            print(f"Replay completed: {outcome.entries_sent}/{outcome.total} sent")
        else:
            where = f" at entry {outcome.failed_index}" if outcome.failed_index is not None else ""
            print(f"Replay aborted{where}: {outcome.reason.value} ({outcome.cause})")

        if session is not None:
            if args.export:
                path = registry.export_log_to_file(session.session_id, ExportFormat.HUMAN, args.export)
                print(f"Log exported to {path}")
            else:
                sys.stdout.write(session.log.export_human())
    finally:
        await registry.shutdown()

    return 0 if outcome.completed else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="replayr",
        description="Send hand-crafted TCP/UDP payloads and replay recorded sessions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:

  # Interactive TCP session (type "hex ..." / "ascii ..." lines):
  python -m replayr connect --address 127.0.0.1 --port 7

  # UDP with an initial payload sent on connect:
  python -m replayr connect --protocol udp --port 5353 --initial-payload "00 01"

  # Replay at a fixed 200ms pace, collecting responses for 2s afterwards:
  python -m replayr replay session.json --interval-ms 200 --linger 2
        """
    )
    parser.add_argument("--config", default=DEFAULT_CONFIG_FILE,
                        help=f"YAML config file (default: {DEFAULT_CONFIG_FILE})")
    parser.add_argument("--log-level", default="WARNING",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Logging level (default: WARNING)")

    endpoint = argparse.ArgumentParser(add_help=False)
    endpoint.add_argument("--protocol", choices=["tcp", "udp"], default=None,
                          help="Transport protocol")
    endpoint.add_argument("--address", default=None, help="Target host")
    endpoint.add_argument("--port", type=int, default=None, help="Target port")
    endpoint.add_argument("--connect-timeout", type=float, default=None,
                          help="Seconds allowed for connecting")

    subparsers = parser.add_subparsers(dest="command", required=True)

    connect = subparsers.add_parser("connect", parents=[endpoint],
                                    help="Open an interactive session")
    connect.add_argument("--initial-payload", default=None,
                         help="Payload sent right after connecting")
    connect.add_argument("--initial-encoding", choices=["hex", "ascii"], default=None,
                         help="Encoding of --initial-payload")
    connect.add_argument("--encoding", choices=["hex", "ascii"], default="hex",
                         help="Encoding for lines without a hex/ascii keyword (default: hex)")
    connect.add_argument("--save-config", action="store_true",
                         help="Write the effective settings back to --config")

    replay = subparsers.add_parser("replay", parents=[endpoint],
                                   help="Replay a recorded session file")
    replay.add_argument("file", help="Replay export (JSON)")
    replay.add_argument("--interval-ms", type=int, default=None,
                        help="Fixed wait between sends instead of recorded timing")
    replay.add_argument("--speed", type=float, default=1.0,
                        help="Divide recorded delays by this factor (default: 1.0)")
    replay.add_argument("--linger", type=float, default=1.0,
                        help="Seconds to keep receiving after the last send (default: 1.0)")
    replay.add_argument("--export", default=None,
                        help="Write the human log here instead of printing it")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_level)

    runner = run_connect if args.command == "connect" else run_replay
    try:
        return asyncio.run(runner(args))
    except KeyboardInterrupt:
        print("\nShutting down...")
        return 130
    except (ReplayrError, ValueError) as e:
        print(f"Error: {e}")
        return 2
