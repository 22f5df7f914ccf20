"""Create employment relations implied by "company" facts.

Scans facts without a matching relation, oldest first, and links each to the
organization entity it names. Safe to re-run: existing relations are skipped.

Usage:
    python scripts/infer_relations.py --dry-run
    python scripts/infer_relations.py --since 2026-01-01 --limit 100
    python scripts/infer_relations.py --stats
"""

import argparse
import asyncio
import os
import sys
from datetime import datetime, timezone

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import get_settings  # noqa: E402
from db.postgres import close_postgres, get_session, init_postgres  # noqa: E402
from models.resolution import InferenceOptions  # noqa: E402
from services.relation_inference import get_relation_inference_service  # noqa: E402
from utils.logging import configure_logging, get_logger  # noqa: E402

logger = get_logger(__name__)


def parse_date(value: str) -> datetime:
    try:
        return datetime.strptime(value, "%Y-%m-%d").replace(tzinfo=timezone.utc)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"expected YYYY-MM-DD, got {value!r}") from e


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Infer employment relations from company facts"
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report what would be created without writing",
    )
    parser.add_argument(
        "--since",
        type=parse_date,
        default=None,
        help="Only consider facts created on or after this date (YYYY-MM-DD)",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Maximum number of facts to process",
    )
    parser.add_argument(
        "--stats",
        action="store_true",
        help="Print fact / organization counts and exit",
    )
    return parser


async def run(args: argparse.Namespace) -> int:
    await init_postgres()
    try:
        async with get_session() as session:
            service = get_relation_inference_service(session)

            if args.stats:
                stats = await service.get_inference_stats()
                print(f"Company facts:        {stats.total_facts}")
                print(f"Without employment:   {stats.unlinked_facts}")
                print(f"Organizations:        {stats.organizations}")
                return 0

            result = await service.infer_relations(
                InferenceOptions(
                    since_date=args.since, dry_run=args.dry_run, limit=args.limit
                )
            )
    finally:
        await close_postgres()

    mode = "would create" if args.dry_run else "created"
    print(
        f"Processed {result.processed} fact(s): "
        f"{mode} {result.created}, skipped {result.skipped}"
    )
    for relation in result.details or []:
        print(f"  {relation.entity_id} -> {relation.organization_name} ({relation.confidence:.2f})")
    for error in result.errors:
        print(f"  ✗ fact {error.fact_id}: {error.error}")
    return 1 if result.errors else 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    if args.limit is not None and args.limit < 1:
        print("--limit must be a positive integer", file=sys.stderr)
        return 2

    settings = get_settings()
    configure_logging(level=settings.log_level, json_format=not settings.debug)
    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
