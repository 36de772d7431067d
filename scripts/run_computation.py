"""
Run a results computation from the command line.

Usage (preview, nothing written to student records):
    python scripts/run_computation.py --department DEPT_ID

Final computation for every department with an active unlocked term
(updates students, writes carry-overs, locks terms):
    python scripts/run_computation.py --final --confirm

Final mode requires --confirm to avoid accidental term locking.
"""
import argparse
import asyncio
import json
import logging

from app.computation.orchestrator import ComputationOrchestrator
from app.computation.reports import build_admin_digest
from app.computation.scheduler import InProcessJobScheduler, start_master_run
from app.core.config import settings
from app.core.firebase_connector import initialize_firebase
from app.repositories.firestore import build_repositories


async def run(department_id, is_preview, purpose, computed_by):
    repos = build_repositories()
    orchestrator = ComputationOrchestrator(
        repos,
        batch_size=settings.COMPUTATION_BATCH_SIZE,
        flush_threshold=settings.COMPUTATION_FLUSH_THRESHOLD,
        list_limit=settings.SUMMARY_LIST_LIMIT,
    )
    scheduler = InProcessJobScheduler(
        orchestrator,
        concurrency=settings.COMPUTATION_CONCURRENCY,
        max_retries=settings.COMPUTATION_MAX_RETRIES,
    )
    scheduler.start()
    try:
        run = await start_master_run(
            repos,
            scheduler,
            computed_by=computed_by,
            is_preview=is_preview,
            purpose=purpose,
            department_id=department_id,
        )
        await scheduler.join()
    finally:
        await scheduler.stop()

    run = await repos.master_runs.get(run.id) or run
    summaries = await repos.summaries.list_for_master_run(run.id)
    return build_admin_digest(run, summaries)


def main():
    parser = argparse.ArgumentParser(description="Compute academic results")
    parser.add_argument("--department", help="Only compute this department")
    parser.add_argument("--final", action="store_true", help="Final computation (default is preview)")
    parser.add_argument("--confirm", action="store_true", help="Required with --final")
    parser.add_argument("--purpose", choices=["final", "preview", "simulation"], help="Override the run purpose")
    parser.add_argument("--computed-by", default="cli", help="User id recorded on the run")
    args = parser.parse_args()

    logging.basicConfig(level=settings.LOG_LEVEL, format="%(asctime)s %(levelname)s %(message)s")

    is_preview = not args.final
    if args.final and not args.confirm:
        print("Final mode updates student records and locks terms. Re-run with --confirm.")
        return

    initialize_firebase()
    digest = asyncio.run(run(args.department, is_preview, args.purpose, args.computed_by))
    print(json.dumps(digest, indent=2, default=str))


if __name__ == "__main__":
    main()
