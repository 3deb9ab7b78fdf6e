"""
Operator CLI for the case assistant.

Initializes the database schema, processes a case's pending ingest jobs, or
rebuilds a case's memory without going through the HTTP API.

Usage:
    python process_jobs.py init-schema
    python process_jobs.py process
    python process_jobs.py process --case-id <uuid> --job-id <uuid> --job-id <uuid>
    python process_jobs.py rebuild-memory --case-id <uuid>
"""

import sys
import json
import argparse
import logging
from pathlib import Path
from dotenv import load_dotenv

# Ensure project root is on path
PROJECT_ROOT = Path(__file__).resolve().parent
sys.path.insert(0, str(PROJECT_ROOT))
load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)


def cmd_init_schema(container, args) -> int:
    container.get_store()
    logger.info(f"Schema ready (storage mode: {container.storage_mode})")
    return 0


def cmd_process(container, args) -> int:
    pipeline = container.get_services()["pipeline"]
    result = pipeline.process_batch(args.case_id, job_ids=args.job_ids or None)
    print(json.dumps(result))
    return 0


def cmd_rebuild_memory(container, args) -> int:
    from execution.case_assistant.memory import memory_rebuild_lock

    store = container.get_store()
    case = store.get_or_create_case(args.case_id)
    memory = container.get_services()["memory"]

    with memory_rebuild_lock(store, case["id"]) as acquired:
        if not acquired:
            logger.warning(f"Memory rebuild already in progress for case {case['id']}")
            print(json.dumps({"status": "in_progress"}))
            return 1
        summary = memory.rebuild_case_memory(case["id"])

    print(json.dumps({"status": "completed", "summary": summary.to_dict()}))
    return 0


def main(argv=None) -> int:
    arg_parser = argparse.ArgumentParser(description="Case assistant job runner")
    subparsers = arg_parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-schema", help="Create tables and probe for pgvector")

    process = subparsers.add_parser("process", help="Process pending ingest jobs")
    process.add_argument("--case-id", type=str, default=None, help="Case ID (default: the default case)")
    process.add_argument(
        "--job-id",
        dest="job_ids",
        action="append",
        default=[],
        help="Only process this job (repeatable)",
    )

    rebuild = subparsers.add_parser("rebuild-memory", help="Rebuild case memory from all documents")
    rebuild.add_argument("--case-id", type=str, default=None, help="Case ID (default: the default case)")

    args = arg_parser.parse_args(argv)

    from execution.case_assistant.api import ServiceContainer

    container = ServiceContainer()
    commands = {
        "init-schema": cmd_init_schema,
        "process": cmd_process,
        "rebuild-memory": cmd_rebuild_memory,
    }
    try:
        return commands[args.command](container, args)
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        return 2


if __name__ == "__main__":
    sys.exit(main())
