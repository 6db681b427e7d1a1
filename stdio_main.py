import asyncio
import argparse
import logging
import sys

from src.config import IPC_DIR
from src.ipc.server import run_stdio


async def main() -> int:
    parser = argparse.ArgumentParser(description="ThreadRelay agent IPC server (stdio)")
    parser.add_argument("--ipc-dir", type=str, default=IPC_DIR, help="Mailbox directory mounted in the sandbox")
    parser.add_argument("--log-level", type=str, default="WARNING", help="Log level for stderr output")
    args = parser.parse_args()

    # stdout carries the protocol; logs go to stderr only
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.WARNING),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )
    return await run_stdio(args.ipc_dir)


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
