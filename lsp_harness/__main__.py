import argparse
import asyncio
import logging
import sys

from .scenario import PROBES, ScenarioDriver
from .session import DEFAULT_TIMEOUT, LanguageServerSession
from .transport import CONNECTION_MODES


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lsp-harness",
        description="Run the LSP conformance scenario against a language server.",
    )
    parser.add_argument(
        "--mode",
        choices=CONNECTION_MODES,
        default="pipe",
        help="pipe spawns the server on stdio, socket connects to host:port",
    )
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=2087)
    parser.add_argument(
        "--timeout",
        type=float,
        default=DEFAULT_TIMEOUT,
        help="seconds to wait for each response",
    )
    parser.add_argument(
        "--feature",
        choices=[*PROBES, "all"],
        default="all",
        help="feature request(s) to probe after the handshake",
    )
    parser.add_argument("--workspace", default=None, help="workspace root to announce")
    parser.add_argument("-v", "--verbose", action="store_true")
    parser.add_argument("command", nargs=argparse.REMAINDER, help="server command")
    return parser


async def main(args: argparse.Namespace) -> int:
    command = args.command[1:] if args.command[:1] == ["--"] else args.command
    if args.mode == "pipe" and not command:
        print("A server command is required in pipe mode", file=sys.stderr)
        return 2

    session = LanguageServerSession(
        command, args.mode, args.host, args.port, timeout=args.timeout
    )
    probes = PROBES.values() if args.feature == "all" else [PROBES[args.feature]]
    try:
        report = await ScenarioDriver(session, args.workspace).run(list(probes))
    finally:
        await session.stop()

    print(report.summary())
    return 0 if report.passed else 1


def run():
    args = build_parser().parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    sys.exit(asyncio.run(main(args)))


if __name__ == "__main__":
    run()
