#!/usr/bin/env python3
"""
Qualification Runner

Qualifies a batch of candidate domains for a client:
1. Ranking data collection (DataForSEO, cache-aware)
2. Qualification (Claude)
3. Target URL matching for high/good quality domains

Usage:
    # Set environment variables first (or put them in .env):
    export DATAFORSEO_LOGIN=your_login
    export DATAFORSEO_PASSWORD=your_password
    export ANTHROPIC_API_KEY=your_key
    export DATABASE_URL=postgresql://...

    # Qualify domains:
    python scripts/run_qualification.py CLIENT_ID DOMAIN_ID [DOMAIN_ID ...]

    # Only fetch ranking data, restricted to one target page:
    python scripts/run_qualification.py CLIENT_ID DOMAIN_ID \
        --skip-ai \
        --target-page https://client.com/widgets

    # Show which domains still need work:
    python scripts/run_qualification.py CLIENT_ID --filters
"""

import asyncio
import argparse
import logging
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv

load_dotenv()

from domain_qualifier.database import dispose_engine, init_db
from domain_qualifier.qualification import QualificationOptions, QualificationOrchestrator
from domain_qualifier.utils import get_settings

logging.basicConfig(
    level=getattr(logging, get_settings().LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def print_progress(progress):
    status = progress.qualification_status or "-"
    print(f"  [{progress.stage:>20}] {progress.domain or progress.domain_id} ({status})")


async def run_qualification(args) -> int:
    settings = get_settings()

    if args.init_db:
        await init_db()

    orchestrator = QualificationOrchestrator(settings=settings)
    try:
        if args.filters:
            filters = await orchestrator.get_smart_selection_filters(args.client_id)
            print(f"Pending ranking data: {len(filters.all_pending_dataforseo)}")
            print(f"Pending AI:           {len(filters.all_pending_ai)}")
            print(f"Pending both:         {len(filters.all_pending_both)}")
            return 0

        if not args.domain_ids:
            print("ERROR: at least one domain id is required")
            return 2

        options = QualificationOptions(
            location_code=args.location_code or settings.DEFAULT_LOCATION_CODE,
            language_code=args.language_code or settings.DEFAULT_LANGUAGE_CODE,
            skip_dataforseo=args.skip_ranking_data,
            skip_ai=args.skip_ai,
            target_page_ids=args.target_page or None,
            on_progress=print_progress if args.verbose else None,
        )
        results = await orchestrator.qualify_domains(args.client_id, args.domain_ids, options)
    finally:
        await orchestrator.close()
        await dispose_engine()

    print()
    print("=" * 70)
    print("QUALIFICATION SUMMARY")
    print("=" * 70)
    for progress in results:
        line = f"{progress.domain or progress.domain_id:<40} {progress.stage:<20} {progress.qualification_status or '-'}"
        if progress.suggested_target_url:
            line += f" -> {progress.suggested_target_url}"
        if progress.error:
            line += f" ({progress.error})"
        print(line)

    failed = [p for p in results if p.stage == "error"]
    print("-" * 70)
    print(f"{len(results) - len(failed)}/{len(results)} domains processed without errors")
    return 1 if failed else 0


def main():
    parser = argparse.ArgumentParser(description="Qualify guest-post domains for a client")
    parser.add_argument("client_id", help="Client id")
    parser.add_argument("domain_ids", nargs="*", help="Domain ids to qualify")
    parser.add_argument("--skip-ranking-data", action="store_true", help="Skip DataForSEO collection")
    parser.add_argument("--skip-ai", action="store_true", help="Skip qualification and target matching")
    parser.add_argument(
        "--target-page", action="append",
        help="Restrict target matching to this target page id or URL (repeatable)",
    )
    parser.add_argument("--location-code", type=int, help="DataForSEO location code (default 2840)")
    parser.add_argument("--language-code", help="DataForSEO language code (default en)")
    parser.add_argument("--filters", action="store_true", help="Print smart selection counts and exit")
    parser.add_argument("--init-db", action="store_true", help="Create tables before running")
    parser.add_argument("-v", "--verbose", action="store_true", help="Print every progress update")

    args = parser.parse_args()
    sys.exit(asyncio.run(run_qualification(args)))


if __name__ == "__main__":
    main()
