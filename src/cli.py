import argparse
import os
from typing import Optional

import uvicorn

# flag dest -> environment variable read by src.config
_ENV_OVERRIDES = {
    "db": "THREADRELAY_DB",
    "data_dir": "THREADRELAY_DATA_DIR",
    "project_dir": "THREADRELAY_PROJECT_DIR",
    "agent_url": "THREADRELAY_AGENT_URL",
    "webhook_url": "THREADRELAY_WEBHOOK_URL",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the ThreadRelay HTTP host")
    parser.add_argument("--host", default=None, help="Bind host (default: THREADRELAY_HOST or 127.0.0.1)")
    parser.add_argument("--port", type=int, default=None, help="Bind port (default: THREADRELAY_PORT or 39780)")
    parser.add_argument("--db", help="SQLite database file")
    parser.add_argument("--data-dir", help="Host data root; group mailboxes live under <data-dir>/ipc")
    parser.add_argument("--project-dir", help="Default working directory for agent sessions")
    parser.add_argument("--agent-url", help="Base URL of the agent session server")
    parser.add_argument("--webhook-url", help="Base URL of the chat relay that receives outgoing messages")
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload for development",
    )
    parser.add_argument("--log-level", default="info", choices=["debug", "info", "warning", "error"])
    return parser


def export_overrides(args: argparse.Namespace) -> None:
    """Publish flag values as environment variables so the app (and reload workers) see them."""
    for dest, env_name in _ENV_OVERRIDES.items():
        value = getattr(args, dest)
        if value:
            os.environ[env_name] = os.path.abspath(value) if dest in ("db", "data_dir", "project_dir") else value


def main(argv: Optional[list[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    export_overrides(args)
    # imported after the overrides so module-level settings pick them up
    from src.config import HOST, PORT

    uvicorn.run(
        "src.main:app",
        host=args.host or HOST,
        port=args.port or PORT,
        reload=args.reload,
        log_level=args.log_level,
        timeout_graceful_shutdown=3,
    )


if __name__ == "__main__":
    main()
