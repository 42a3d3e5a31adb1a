"""CLI tool for operator tasks.

Usage:
    python -m backend.cli init-db
    python -m backend.cli status
    python -m backend.cli tick [--force]
    python -m backend.cli serve [--host HOST] [--port PORT]
"""

import asyncio
import json
import sys

from backend.database import engine, create_db_and_tables
from backend.services.state_store import StateStore
from backend.utils.logging import setup_logging


def init_db():
    create_db_and_tables()
    print("Document store ready.")


def show_status():
    create_db_and_tables()
    store = StateStore(engine)
    print(json.dumps({
        "config": store.load_config().model_dump(),
        "runtime": store.load_runtime().model_dump(),
    }, indent=2))


def tick(force: bool):
    """Run a single tick; --force ignores a stopped config."""
    from backend.engine.tick import run_tick

    create_db_and_tables()
    result = asyncio.run(run_tick(ignore_status=force))
    print(json.dumps(result, indent=2, default=str))
    if result.get("ok") is False:
        sys.exit(1)


def serve(args: list[str]):
    import uvicorn

    host, port = "0.0.0.0", 8000
    if "--host" in args:
        host = args[args.index("--host") + 1]
    if "--port" in args:
        port = int(args[args.index("--port") + 1])
    uvicorn.run("backend.main:app", host=host, port=port)


def main():
    if len(sys.argv) < 2:
        print("Usage: python -m backend.cli <command>")
        print("Commands: init-db, status, tick [--force], serve [--host H] [--port P]")
        sys.exit(1)

    setup_logging()
    command = sys.argv[1]
    if command == "init-db":
        init_db()
    elif command == "status":
        show_status()
    elif command == "tick":
        tick(force="--force" in sys.argv[2:])
    elif command == "serve":
        serve(sys.argv[2:])
    else:
        print(f"Unknown command: {command}")
        sys.exit(1)


if __name__ == "__main__":
    main()
