import argparse
import sys
from collections import Counter

import yaml
from pydantic import ValidationError

from .config import configure_logging, resolve_config
from .queue.models import JobState
from .queue.sqlite_store import SQLiteJobStore
from .security.auth import hash_api_key


def _cli_overrides(args) -> dict:
    keys = ("host", "port", "workers", "db", "log_level", "environment")
    return {k: getattr(args, k) for k in keys if getattr(args, k, None) is not None}


def _add_config_args(parser):
    parser.add_argument("--config", "-c", type=str, help="YAML config file (replaces default + local)")
    parser.add_argument(
        "--env",
        dest="environment",
        choices=["development", "production", "test"],
        help="Runtime environment",
    )
    parser.add_argument("--db", type=str, help="Job database path")
    parser.add_argument("--workers", "-w", type=int, help="Number of worker slots")
    parser.add_argument(
        "--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Log level"
    )


def run_serve(args) -> None:
    import uvicorn

    from .api.app import create_app

    config = resolve_config(_cli_overrides(args), config_path=args.config)
    configure_logging(config.logging)
    app = create_app(config)
    uvicorn.run(app, host=config.server.host, port=config.server.port, log_config=None)


def main():
    parser = argparse.ArgumentParser(prog="vidqueue", description="Video processing job queue")
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # SERVE
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API and worker pool")
    serve_parser.add_argument("--host", type=str, help="Bind address")
    serve_parser.add_argument("--port", "-p", type=int, help="Listen port")
    _add_config_args(serve_parser)

    # CONFIG
    config_parser = subparsers.add_parser("config", help="Print the resolved configuration")
    _add_config_args(config_parser)

    # HASH-KEY
    hash_parser = subparsers.add_parser("hash-key", help="Print the SHA-256 hash of an API key")
    hash_parser.add_argument("key", type=str, help="Raw API key")

    # QUEUE STATUS
    queue_parser = subparsers.add_parser("queue", help="Inspect the job store")
    queue_subparsers = queue_parser.add_subparsers(dest="queue_command", help="Queue commands")
    status_parser = queue_subparsers.add_parser("status", help="Show job counts per state")
    status_parser.add_argument("--db", type=str, default="vidqueue.db", help="Job database path")

    list_parser = queue_subparsers.add_parser("list", help="List the most recent jobs")
    list_parser.add_argument("--db", type=str, default="vidqueue.db", help="Job database path")
    list_parser.add_argument(
        "--state", choices=[state.value for state in JobState], help="Only jobs in this state"
    )
    list_parser.add_argument("--limit", "-n", type=int, default=10, help="Maximum jobs to show")

    show_parser = queue_subparsers.add_parser("show", help="Show one job and its state history")
    show_parser.add_argument("job_id", type=str, help="Job ID")
    show_parser.add_argument("--db", type=str, default="vidqueue.db", help="Job database path")

    args = parser.parse_args()

    if args.command == "serve":
        try:
            run_serve(args)
        except ValidationError as e:
            print(f"Invalid configuration:\n{e}", file=sys.stderr)
            sys.exit(2)

    elif args.command == "config":
        try:
            config = resolve_config(_cli_overrides(args), config_path=args.config)
        except ValidationError as e:
            print(f"Invalid configuration:\n{e}", file=sys.stderr)
            sys.exit(2)
        data = config.model_dump(mode="json")
        # Never echo secrets
        auth = data["auth"]
        auth["api_keys"] = ["***"] * len(auth["api_keys"])
        auth["admin_key"] = "***" if auth["admin_key"] else None
        auth["dev_key"] = "***" if auth["dev_key"] else None
        for entry in auth["keys"]:
            entry["key"] = "***"
        print(yaml.safe_dump(data, sort_keys=False))

    elif args.command == "hash-key":
        print(hash_api_key(args.key))

    elif args.command == "queue":
        if args.queue_command == "status":
            store = SQLiteJobStore(args.db)
            try:
                counts = Counter(job.state for job in store.load_all())
            finally:
                store.close()
            print("\n" + "=" * 60)
            print("QUEUE STATUS")
            print("=" * 60)
            for state in JobState:
                print(f"{state.value.capitalize() + ':':<22}{counts[state]}")
            print(f"{'Total:':<22}{sum(counts.values())}")
            print("=" * 60)

        elif args.queue_command == "list":
            state = JobState(args.state) if args.state else None
            store = SQLiteJobStore(args.db)
            try:
                jobs = store.list_jobs(state=state, limit=args.limit)
            finally:
                store.close()
            for job in jobs:
                print(
                    f"{job.job_id:<32}{job.state.value:<11}{job.progress:>4}%  "
                    f"{job.created_at.isoformat()}  {job.payload.video_url}"
                )
            if not jobs:
                print("No jobs found.")

        elif args.queue_command == "show":
            store = SQLiteJobStore(args.db)
            try:
                job = store.get(args.job_id)
                history = store.transitions(args.job_id) if job else []
            finally:
                store.close()
            if job is None:
                print(f"No job found with ID: {args.job_id}", file=sys.stderr)
                sys.exit(1)
            print(yaml.safe_dump(job.model_dump(mode="json"), sort_keys=False))
            print("History:")
            for row in history:
                print(
                    f"  {row['timestamp']}  {row['from_state'] or '-'} -> {row['to_state']}"
                    f"  {row['reason'] or ''}"
                )
        else:
            queue_parser.print_help()

    else:
        parser.print_help()


if __name__ == "__main__":
    main()
