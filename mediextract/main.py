"""
Batch extraction entry point.

Usage:
    mediextract --pdf study1.pdf study2.pdf [options]
    python -m mediextract.main --pdf study.pdf

Stage Configuration:
    Stages are configured via config.yaml in the project root
    (model, output tokens, prompt file; export_validation can be disabled).

Options:
    --pdf PATH [PATH ...]   PDFs to process, one at a time
    --schema PATH           Question schema JSON (default: bundled medical schema)
    --output DIR            Output directory (default: outputs/<timestamp>)
    --no-history            Do not save completed results to the history database
    --show-stages           Show stage configuration and exit
    --show-history N        Show the N most recent history entries and exit
    --log-level LEVEL       Logging level (DEBUG, INFO, WARNING, ERROR)
"""

import argparse
import asyncio
import logging
import sys
from datetime import datetime
from pathlib import Path

from dotenv import load_dotenv
load_dotenv()

from mediextract.config import settings
from mediextract.models.records import DocumentStatus
from mediextract.models.schema import SchemaError, load_default_schema, load_schema
from mediextract.services.agent_runner import AgentRunner
from mediextract.services.export_service import write_results_json, write_wide_csv
from mediextract.services.gemini_service import GeminiService
from mediextract.services.history_service import HistoryService
from mediextract.services.pipeline_orchestrator import PipelineOrchestrator, ProgressEvent
from mediextract.stage_registry import get_registry

RESULTS_FILE = "batch_results.json"
WIDE_CSV_FILE = "wide_report.csv"


# Configure logging
def setup_logging(level: str = "INFO"):
    """Configure logging with specified level."""
    log_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout),
        ]
    )
    return logging.getLogger(__name__)


def print_progress(event: ProgressEvent):
    print(f"  [{event.file_name}] {event.step}: {event.completed}/{event.total}")


def show_history(limit: int):
    results = HistoryService().list_results(limit=limit)
    if not results:
        print("No history available yet.")
        return
    for result in results:
        print(
            f"{result.completed_at or '-':26} {result.file_name:40} "
            f"{len(result.records):4} records  {result.token_usage.total_tokens:8} tokens"
        )


async def run_batch(pdf_paths, schema, output_dir: Path, use_history: bool):
    """Run the pipeline for every PDF and write batch outputs."""
    registry = get_registry()
    runner = AgentRunner(GeminiService(), registry, settings)
    history = HistoryService() if use_history else None
    orchestrator = PipelineOrchestrator(
        runner,
        schema,
        settings,
        history=history,
        progress_callback=print_progress,
    )

    results = await orchestrator.run_batch(pdf_paths)

    write_results_json(results, output_dir / RESULTS_FILE)
    write_wide_csv(schema, results, output_dir / WIDE_CSV_FILE)
    return results


def main():
    parser = argparse.ArgumentParser(
        description="Clinical-trial PDF extraction pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Process a batch of PDFs
  mediextract --pdf trial_a.pdf trial_b.pdf

  # Show stage configuration
  mediextract --show-stages

  # Use a different schema version and skip history
  mediextract --pdf trial.pdf --schema schema_v2.json --no-history
        """
    )
    parser.add_argument("--pdf", nargs="+", help="Path(s) to PDF documents")
    parser.add_argument("--schema", default=None, help="Question schema JSON file")
    parser.add_argument("--output", default=None, help="Output directory")
    parser.add_argument("--no-history", action="store_true", help="Do not save results to history")
    parser.add_argument("--show-stages", action="store_true", help="Show stage config and exit")
    parser.add_argument("--show-history", type=int, metavar="N", default=None, help="Show N recent history entries and exit")
    parser.add_argument("--log-level", default=settings.log_level, help="Logging level")

    args = parser.parse_args()

    # Setup logging
    logger = setup_logging(args.log_level)

    if args.show_stages:
        print(get_registry().get_status_summary())
        return

    if args.show_history is not None:
        show_history(args.show_history)
        return

    if not args.pdf:
        print("Error: --pdf is required for extraction")
        print("Use --show-stages to view stage configuration")
        print("Use --help for more options")
        sys.exit(1)

    if not settings.gemini_api_key:
        print("Error: GEMINI_API_KEY is not set (add it to .env)")
        sys.exit(1)

    try:
        schema = load_schema(args.schema) if args.schema else load_default_schema()
    except SchemaError as e:
        print(f"Error: {e}")
        sys.exit(1)

    if args.output:
        output_dir = Path(args.output)
    else:
        output_dir = settings.outputs_dir / datetime.now().strftime("%Y%m%d_%H%M%S")
    output_dir.mkdir(parents=True, exist_ok=True)

    print(get_registry().get_status_summary())
    print()

    try:
        results = asyncio.run(
            run_batch(
                pdf_paths=[Path(p) for p in args.pdf],
                schema=schema,
                output_dir=output_dir,
                use_history=not args.no_history,
            )
        )
    except KeyboardInterrupt:
        print("\nExtraction cancelled by user.")
        sys.exit(1)
    except Exception as e:
        logger.exception(f"Batch failed: {e}")
        sys.exit(1)

    print("\nBatch complete!")
    for result in results:
        status = result.status.value.upper()
        detail = f"{len(result.records)} records" if result.status == DocumentStatus.COMPLETED else result.error
        print(f"  [{status:9}] {result.file_name}: {detail} ({result.token_usage.total_tokens} tokens)")
    print(f"  Output directory: {output_dir}")

    if any(r.status == DocumentStatus.ERROR for r in results):
        sys.exit(1)


if __name__ == "__main__":
    main()
