# src/orchestrator/run_pipeline.py
"""
Command-line entry point for the full feedback -> requirements pipeline.

    python -m src.orchestrator.run_pipeline --workspace acme --source sql_server --since 2025-01-01T00:00:00
"""

import argparse
import logging
import time

from src.agents.cost import CostLedger
from src.config.settings import Settings
from src.models.schemas import TicketQueue
from src.orchestrator.workers import PipelineOrchestrator, STAGE_ORDER

logger = logging.getLogger(__name__)


def print_cost_report(ledger: CostLedger, workspace_id: str, period: str = None) -> None:
    entry = ledger.report(workspace_id, period)
    print("\n" + "="*60)
    print(f"MODEL SPEND: workspace {entry.workspace_id}, period {entry.period}")
    print("="*60)
    print(f"Calls: {entry.calls}")
    print(f"Input tokens: {entry.input_tokens}")
    print(f"Output tokens: {entry.output_tokens}")
    print(f"Cost: ${entry.cost:.4f}")
    print("="*60)


def main():
    """Main entry point for running the pipeline with CLI arguments."""
    from src.data_access.postgres_store import PostgresStore
    from src.sources.base import build_source

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    parser = argparse.ArgumentParser(
        description='Ingest customer feedback and turn it into synced product requirements.'
    )
    parser.add_argument('--workspace', required=True, help='Workspace id')
    parser.add_argument('--source', default='sql_server', choices=['sql_server'],
                        help='Pull source to ingest from')
    parser.add_argument('--source-system', help='Source system name recorded on each item')
    parser.add_argument('--since', help='Only ingest feedback created after this ISO timestamp')
    parser.add_argument('--max-pages', type=int, help='Maximum number of source pages to fetch')
    parser.add_argument('--workers', type=int, help='Workers per stage (default from settings)')
    parser.add_argument('--run-seconds', type=float,
                        help='Run threaded workers for this long instead of draining the queues once')
    parser.add_argument('--skip-ingest', action='store_true', help='Only process jobs already queued')
    parser.add_argument('--retry-failed-sync', action='store_true', help='Re-dispatch failed sync records first')
    parser.add_argument('--cost-report', action='store_true', help='Only print the workspace cost report')
    parser.add_argument('--period', help='Billing period for the cost report (YYYY-MM)')
    parser.add_argument('--init-schema', action='store_true', help='Create tables before running')

    args = parser.parse_args()

    config = Settings()
    store = PostgresStore(config)

    try:
        if args.init_schema:
            store.initialize_schema()

        if args.cost_report:
            print_cost_report(CostLedger(config, store), args.workspace, args.period)
            return

        orchestrator = PipelineOrchestrator(config, store)
        ingest_stats = None

        if args.retry_failed_sync:
            orchestrator.dispatcher.retry_failed(args.workspace)

        if not args.skip_ingest:
            source = build_source(args.source, config, source_system=args.source_system)
            try:
                ingest_stats = orchestrator.ingestion.run(
                    source, args.workspace, cursor=args.since, max_pages=args.max_pages
                )
            finally:
                if hasattr(source, "close"):
                    source.close()

        start = time.time()
        if args.run_seconds:
            orchestrator.start(args.workers)
            try:
                while time.time() - start < args.run_seconds and not orchestrator.idle():
                    time.sleep(config.queue_poll_seconds)
            finally:
                orchestrator.stop()
        else:
            orchestrator.drain()
        orchestrator.maintenance()
        elapsed = time.time() - start

        stats = dict(orchestrator.stats)
        manual_review = store.list_tickets(TicketQueue.MANUAL_REVIEW, args.workspace)
        operator = store.list_tickets(TicketQueue.OPERATOR, args.workspace)
        ledger = orchestrator.synthesizer.router.ledger

        print("\n" + "="*60)
        print("FEEDBACK PIPELINE RESULTS")
        print("="*60)
        if ingest_stats:
            print(f"Records fetched: {ingest_stats['total_records']} "
                  f"({ingest_stats['created']} new, {ingest_stats['updated']} updated, "
                  f"{ingest_stats['rejected']} rejected)")
            print(f"Next cursor: {ingest_stats['next_cursor']}")
        for stage in STAGE_ORDER:
            done = stats.get(f"{stage.value}.done", 0)
            failed = stats.get(f"{stage.value}.failed", 0)
            requeued = stats.get(f"{stage.value}.requeued", 0)
            print(f"{stage.value:<10} done={done} failed={failed} requeued={requeued}")
        print(f"Manual review tickets: {len(manual_review)}")
        print(f"Operator tickets: {len(operator)}")
        print(f"Elapsed: {elapsed:.1f}s")
        print("="*60)
        print_cost_report(ledger, args.workspace, args.period)
    finally:
        store.close()


if __name__ == "__main__":
    main()
