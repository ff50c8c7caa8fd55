#!/usr/bin/env python3
"""
Index Reconciliation Script

Reports drift between the primary store and the vector index for a
workspace, and optionally repairs it (re-index missing/stale records,
delete orphaned index entries).

Usage:
    python scripts/reconcile_index.py WORKSPACE_ID [--repair] [--dry-run]
    python scripts/reconcile_index.py WORKSPACE_ID --reindex CONTEXT_ID
"""

import sys
import asyncio
import logging
import argparse

from dotenv import load_dotenv


async def run(args) -> int:
    from context_engine import create_engine
    from context_engine.common.config import ensure_data_path, load_config
    from context_engine.common.errors import ContextEngineError, NotFoundError

    config = ensure_data_path(load_config())
    engine = create_engine(config)

    try:
        health = await engine.storage.health_check()
        print(f"[Reconcile] Health: {health}")
        if not health.get("primary_store"):
            print("[Reconcile] ERROR: Primary store not reachable")
            return 1

        if args.reindex:
            try:
                await engine.storage.require_context(args.reindex)
            except NotFoundError as e:
                print(f"[Reconcile] ERROR: {e}")
                return 1
            ok = await engine.storage.reindex(args.reindex)
            print(f"[Reconcile] Reindex {args.reindex}: {'ok' if ok else 'failed'}")
            return 0 if ok else 1

        drift = await engine.reconciler.find_drift(args.workspace_id)
        print(f"[Reconcile] Workspace {args.workspace_id}: {drift.summary}")
        for context_id in drift.missing_from_index:
            print(f"  missing   {context_id}")
        for context_id in drift.stale_generation:
            print(f"  stale     {context_id}")
        for entry in drift.orphaned_in_index:
            print(f"  orphaned  {entry.context_id} (tier={entry.tier})")

        if drift.is_clean or not args.repair:
            return 0

        if args.dry_run:
            print("[Reconcile] DRY RUN - no changes will be made")
            return 0

        report = await engine.reconciler.repair(drift)
        print(
            f"[Reconcile] Complete: {report.reindexed} reindexed, "
            f"{report.orphans_deleted} orphans deleted, {len(report.failed)} failed"
        )
        return 1 if report.failed else 0

    except ContextEngineError as e:
        print(f"[Reconcile] ERROR: {e}")
        return 1
    finally:
        await engine.close()


def main():
    parser = argparse.ArgumentParser(description="Find and repair primary store / vector index drift")
    parser.add_argument("workspace_id", help="Workspace to reconcile")
    parser.add_argument("--repair", action="store_true", help="Re-index missing records and delete orphans")
    parser.add_argument("--dry-run", action="store_true", help="With --repair, print what would be done without executing")
    parser.add_argument("--reindex", metavar="CONTEXT_ID", help="Re-index a single context and exit")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args()

    load_dotenv()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
