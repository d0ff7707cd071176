"""ticketflow CLI entry point."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from ticketflow.config import DEFAULT_CONFIG


def _init_project(root: Path, config_dir: Path | None) -> None:
    """Scaffold a .ticketflow/ directory with default configuration."""
    config_dir = config_dir or root / ".ticketflow"
    config_path = config_dir / "config.yaml"

    if config_path.exists():
        print(f"Error: {config_path} already exists", file=sys.stderr)
        print("Remove it first if you want to re-initialize.", file=sys.stderr)
        sys.exit(1)

    config_dir.mkdir(parents=True, exist_ok=True)
    config_path.write_text(DEFAULT_CONFIG)

    print(f"Initialized ticketflow at {config_dir}")
    print()
    print("Next steps:")
    print(f"  1. Review {config_path} (agent.command in particular)")
    print(f"  2. Run: ticketflow serve --root {root}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ticketflow",
        description="ticketflow — Kanban ticket workflow engine with supervised coding-agent runs",
    )
    subparsers = parser.add_subparsers(dest="command")

    for name, help_text in (
        ("init", "Write a default .ticketflow/config.yaml"),
        ("serve", "Start the ticketflow server"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument(
            "--root",
            type=Path,
            default=Path.cwd(),
            help="Project root; relative data paths resolve against it (default: current directory)",
        )
        sub.add_argument(
            "--config-dir",
            type=Path,
            default=None,
            help="Directory holding config.yaml (default: <root>/.ticketflow)",
        )
        if name == "serve":
            sub.add_argument("--host", default="127.0.0.1", help="Host to bind to (default: 127.0.0.1)")
            sub.add_argument("--port", type=int, default=8000, help="Port to bind to (default: 8000)")
            sub.add_argument(
                "--log-level",
                default="INFO",
                choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                help="Logging level (default: INFO)",
            )
    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "init":
        _init_project(args.root, args.config_dir)
        return

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    from ticketflow.server import TicketFlowServer, create_app

    server = TicketFlowServer(root=args.root, config_dir=args.config_dir)
    config_path = server.config_dir / "config.yaml"
    if not config_path.exists():
        print(f"Error: config not found at {config_path}", file=sys.stderr)
        print("Run 'ticketflow init' to create one, or specify --config-dir", file=sys.stderr)
        sys.exit(1)

    import uvicorn

    app = create_app(server)
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())


if __name__ == "__main__":
    main()
