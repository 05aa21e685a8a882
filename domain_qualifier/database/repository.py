"""
Repository Layer - Clean Interface for Data Operations

Provides simple async functions to store and retrieve qualification data.
Handles all SQLAlchemy complexity internally.

Every write is scoped to a single domain's rows, so concurrent callers
working on different domains never conflict.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select, update, or_
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models import (
    KeywordRanking,
    QualificationResult,
    TargetMatchResult,
    sort_rankings,
)
from .models import (
    BulkAnalysisDomain,
    KeywordAnalysisResult,
    KeywordSearchHistory,
    RankingApiLog,
    TargetPage,
    TargetPageStatus,
    utcnow,
)
from .session import get_db_context

logger = logging.getLogger(__name__)

# Retries for the optimistic version check on searched_keywords
MAX_VERSION_RETRIES = 5


# =============================================================================
# DOMAINS
# =============================================================================

async def get_domains(
    client_id: str,
    domain_ids: List[str],
    session_factory: Optional[async_sessionmaker] = None,
) -> List[BulkAnalysisDomain]:
    """Load the requested domains that belong to the client."""
    if not domain_ids:
        return []

    async with get_db_context(session_factory) as db:
        result = await db.execute(
            select(BulkAnalysisDomain).where(
                BulkAnalysisDomain.client_id == client_id,
                BulkAnalysisDomain.id.in_(domain_ids),
            )
        )
        return list(result.scalars().all())


async def get_client_domains(
    client_id: str,
    session_factory: Optional[async_sessionmaker] = None,
) -> List[BulkAnalysisDomain]:
    async with get_db_context(session_factory) as db:
        result = await db.execute(
            select(BulkAnalysisDomain).where(BulkAnalysisDomain.client_id == client_id)
        )
        return list(result.scalars().all())


async def update_domain_ranking_status(
    domain_id: str,
    has_results: bool,
    results_count: Optional[int] = None,
    session_factory: Optional[async_sessionmaker] = None,
) -> None:
    """
    Record that ranking data was collected for a domain.

    has_ranking_results is only ever raised here: an incremental fetch that
    finds nothing new must not hide results stored by earlier runs.
    """
    values: Dict[str, Any] = {
        "ranking_last_analyzed_at": utcnow(),
        "updated_at": utcnow(),
    }
    if has_results:
        values["has_ranking_results"] = True
    if results_count is not None:
        values["ranking_results_count"] = results_count

    async with get_db_context(session_factory) as db:
        await db.execute(
            update(BulkAnalysisDomain)
            .where(BulkAnalysisDomain.id == domain_id)
            .values(**values)
        )

    logger.debug(f"Updated domain {domain_id} ranking status: has_results={has_results}, count={results_count}")


async def store_qualification(
    result: QualificationResult,
    match: Optional[TargetMatchResult] = None,
    session_factory: Optional[async_sessionmaker] = None,
) -> None:
    """Persist a judge verdict, plus the target match when one succeeded."""
    now = utcnow()
    values: Dict[str, Any] = {
        "qualification_status": result.qualification,
        "ai_reasoning": result.reasoning,
        "overlap_status": result.overlap_status,
        "authority_direct": result.authority_direct,
        "authority_related": result.authority_related,
        "topic_scope": result.topic_scope,
        "topic_reasoning": result.topic_reasoning,
        "evidence": result.evidence.to_dict(),
        "ai_qualified_at": now,
        "updated_at": now,
    }
    if match is not None:
        values.update(_target_match_values(match, now))

    async with get_db_context(session_factory) as db:
        await db.execute(
            update(BulkAnalysisDomain)
            .where(BulkAnalysisDomain.id == result.domain_id)
            .values(**values)
        )


async def store_target_match(
    match: TargetMatchResult,
    session_factory: Optional[async_sessionmaker] = None,
) -> None:
    async with get_db_context(session_factory) as db:
        await db.execute(
            update(BulkAnalysisDomain)
            .where(BulkAnalysisDomain.id == match.domain_id)
            .values(**_target_match_values(match, utcnow()))
        )


def _target_match_values(match: TargetMatchResult, now: datetime) -> Dict[str, Any]:
    return {
        "suggested_target_url": match.best_target_url,
        "target_match_data": match.to_dict(),
        "target_matched_at": now,
        "updated_at": now,
    }


# =============================================================================
# TARGET PAGES
# =============================================================================

async def get_active_target_pages(
    client_id: str,
    target_page_ids: Optional[List[str]] = None,
    session_factory: Optional[async_sessionmaker] = None,
) -> List[TargetPage]:
    """Active target pages for a client, optionally restricted to specific ids."""
    async with get_db_context(session_factory) as db:
        query = select(TargetPage).where(
            TargetPage.client_id == client_id,
            TargetPage.status == TargetPageStatus.ACTIVE.value,
        )
        if target_page_ids is not None:
            query = query.where(TargetPage.id.in_(target_page_ids))
        result = await db.execute(query.order_by(TargetPage.created_at))
        return list(result.scalars().all())


async def get_target_page_keywords(
    target_page_ids: List[str],
    session_factory: Optional[async_sessionmaker] = None,
) -> List[str]:
    """Aggregate and dedupe keywords across target pages."""
    if not target_page_ids:
        return []

    async with get_db_context(session_factory) as db:
        result = await db.execute(
            select(TargetPage).where(TargetPage.id.in_(target_page_ids))
        )
        pages = result.scalars().all()

    keywords: List[str] = []
    seen = set()
    for page in pages:
        for keyword in page.keyword_list():
            if keyword not in seen:
                seen.add(keyword)
                keywords.append(keyword)
    return keywords


async def find_target_page_ids_by_url(
    client_id: str,
    urls: List[str],
    session_factory: Optional[async_sessionmaker] = None,
) -> Dict[str, str]:
    """Map raw URLs to target page ids for a client (unknown URLs are absent)."""
    if not urls:
        return {}

    async with get_db_context(session_factory) as db:
        result = await db.execute(
            select(TargetPage.id, TargetPage.url).where(
                TargetPage.client_id == client_id,
                TargetPage.url.in_(urls),
            )
        )
        return {row.url: row.id for row in result}


# =============================================================================
# KEYWORD RESULTS
# =============================================================================

def _row_to_ranking(row: KeywordAnalysisResult, from_cache: bool = False) -> KeywordRanking:
    return KeywordRanking(
        keyword=row.keyword,
        position=row.position,
        search_volume=row.search_volume,
        url=row.url or "",
        cpc=row.cpc,
        competition=row.competition or "UNKNOWN",
        is_from_cache=from_cache,
    )


async def store_keyword_results(
    domain_id: str,
    rankings: List[KeywordRanking],
    location_code: int,
    language_code: str,
    analysis_batch_id: Optional[str] = None,
    is_incremental: bool = False,
    session_factory: Optional[async_sessionmaker] = None,
) -> int:
    """
    Append a ranking snapshot for a domain.

    Returns:
        Number of rows stored
    """
    if not rankings:
        return 0

    now = utcnow()
    async with get_db_context(session_factory) as db:
        db.add_all([
            KeywordAnalysisResult(
                bulk_analysis_domain_id=domain_id,
                keyword=ranking.keyword,
                position=ranking.position,
                search_volume=ranking.search_volume,
                url=ranking.url,
                cpc=ranking.cpc,
                competition=ranking.competition,
                location_code=location_code,
                language_code=language_code,
                analysis_batch_id=analysis_batch_id,
                is_incremental=is_incremental,
                analysis_date=now,
            )
            for ranking in rankings
        ])

    logger.info(f"Stored {len(rankings)} keyword rankings for domain {domain_id}")
    return len(rankings)


def _latest_per_keyword(rows: Iterable[KeywordAnalysisResult]) -> Dict[Tuple[str, str], KeywordAnalysisResult]:
    """Rows must arrive newest first; keeps the first row per (domain, keyword)."""
    latest: Dict[Tuple[str, str], KeywordAnalysisResult] = {}
    for row in rows:
        key = (row.bulk_analysis_domain_id, row.keyword)
        if key not in latest:
            latest[key] = row
    return latest


async def get_latest_rankings(
    domain_id: str,
    keywords: List[str],
    session_factory: Optional[async_sessionmaker] = None,
) -> List[KeywordRanking]:
    """Most recent stored ranking for each of the given keywords (cache hits)."""
    if not keywords:
        return []

    async with get_db_context(session_factory) as db:
        result = await db.execute(
            select(KeywordAnalysisResult)
            .where(
                KeywordAnalysisResult.bulk_analysis_domain_id == domain_id,
                KeywordAnalysisResult.keyword.in_(keywords),
            )
            .order_by(KeywordAnalysisResult.analysis_date.desc(), KeywordAnalysisResult.id.desc())
        )
        rows = result.scalars().all()

    latest = _latest_per_keyword(rows)
    return sort_rankings(_row_to_ranking(row, from_cache=True) for row in latest.values())


async def get_keyword_rankings(
    domain_ids: List[str],
    session_factory: Optional[async_sessionmaker] = None,
) -> Dict[str, List[KeywordRanking]]:
    """
    Current ranking view for each domain: latest row per keyword,
    sorted by position ascending then search volume descending.
    """
    rankings: Dict[str, List[KeywordRanking]] = {domain_id: [] for domain_id in domain_ids}
    if not domain_ids:
        return rankings

    async with get_db_context(session_factory) as db:
        result = await db.execute(
            select(KeywordAnalysisResult)
            .where(KeywordAnalysisResult.bulk_analysis_domain_id.in_(domain_ids))
            .order_by(KeywordAnalysisResult.analysis_date.desc(), KeywordAnalysisResult.id.desc())
        )
        rows = result.scalars().all()

    for (domain_id, _), row in _latest_per_keyword(rows).items():
        rankings[domain_id].append(_row_to_ranking(row))

    return {domain_id: sort_rankings(items) for domain_id, items in rankings.items()}


# =============================================================================
# KEYWORD SEARCH HISTORY & CACHE STATE
# =============================================================================

async def get_keyword_search_history(
    domain_id: str,
    keywords: List[str],
    location_code: int,
    language_code: str,
    session_factory: Optional[async_sessionmaker] = None,
) -> Dict[str, Tuple[bool, datetime]]:
    """keyword -> (has_results, searched_at) for previously searched keywords."""
    if not keywords:
        return {}

    async with get_db_context(session_factory) as db:
        result = await db.execute(
            select(
                KeywordSearchHistory.keyword,
                KeywordSearchHistory.has_results,
                KeywordSearchHistory.searched_at,
            ).where(
                KeywordSearchHistory.bulk_analysis_domain_id == domain_id,
                KeywordSearchHistory.location_code == location_code,
                KeywordSearchHistory.language_code == language_code,
                KeywordSearchHistory.keyword.in_(keywords),
            )
        )
        return {row.keyword: (bool(row.has_results), row.searched_at) for row in result}


def _dialect_insert(db: AsyncSession):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert
    if dialect == "sqlite":
        return sqlite_insert
    raise NotImplementedError(f"Upsert not supported for dialect {dialect}")


async def upsert_keyword_search_history(
    domain_id: str,
    keywords: List[str],
    has_results: bool,
    location_code: int,
    language_code: str,
    session_factory: Optional[async_sessionmaker] = None,
) -> None:
    """
    Record a search for each keyword.

    On conflict has_results is OR'd with the stored value (never downgraded)
    and searched_at is refreshed.
    """
    unique_keywords = list(dict.fromkeys(k for k in keywords if k))
    if not unique_keywords:
        return

    now = utcnow()
    async with get_db_context(session_factory) as db:
        insert = _dialect_insert(db)
        stmt = insert(KeywordSearchHistory).values([
            {
                "bulk_analysis_domain_id": domain_id,
                "keyword": keyword,
                "location_code": location_code,
                "language_code": language_code,
                "has_results": has_results,
                "searched_at": now,
            }
            for keyword in unique_keywords
        ])
        stmt = stmt.on_conflict_do_update(
            index_elements=[
                KeywordSearchHistory.bulk_analysis_domain_id,
                KeywordSearchHistory.keyword,
                KeywordSearchHistory.location_code,
                KeywordSearchHistory.language_code,
            ],
            set_={
                "has_results": or_(KeywordSearchHistory.has_results, stmt.excluded.has_results),
                "searched_at": stmt.excluded.searched_at,
            },
        )
        await db.execute(stmt)


async def get_domain_cache_state(
    domain_id: str,
    session_factory: Optional[async_sessionmaker] = None,
) -> Optional[Dict[str, Any]]:
    """Cache-related counters for a domain, or None if it doesn't exist."""
    async with get_db_context(session_factory) as db:
        result = await db.execute(
            select(
                BulkAnalysisDomain.last_full_analysis_at,
                BulkAnalysisDomain.searched_keywords,
                BulkAnalysisDomain.total_api_calls,
                BulkAnalysisDomain.incremental_api_calls,
            ).where(BulkAnalysisDomain.id == domain_id)
        )
        row = result.first()

    if row is None:
        return None
    return {
        "last_full_analysis_at": row.last_full_analysis_at,
        "searched_keywords": list(row.searched_keywords or []),
        "total_api_calls": row.total_api_calls or 0,
        "incremental_api_calls": row.incremental_api_calls or 0,
    }


async def merge_searched_keywords(
    domain_id: str,
    new_keywords: List[str],
    is_full_analysis: bool,
    session_factory: Optional[async_sessionmaker] = None,
) -> bool:
    """
    Merge keywords into the domain's cumulative searched set and bump counters.

    Read-merge-write guarded by the version column; retried when another
    writer got there first.

    Returns:
        True if the update was applied
    """
    for attempt in range(MAX_VERSION_RETRIES):
        async with get_db_context(session_factory) as db:
            result = await db.execute(
                select(
                    BulkAnalysisDomain.searched_keywords,
                    BulkAnalysisDomain.total_api_calls,
                    BulkAnalysisDomain.incremental_api_calls,
                    BulkAnalysisDomain.version,
                ).where(BulkAnalysisDomain.id == domain_id)
            )
            row = result.first()
            if row is None:
                logger.warning(f"Cannot update searched keywords: domain {domain_id} not found")
                return False

            merged = list(dict.fromkeys(list(row.searched_keywords or []) + list(new_keywords)))
            now = utcnow()
            values: Dict[str, Any] = {
                "searched_keywords": merged,
                "total_api_calls": (row.total_api_calls or 0) + 1,
                "version": row.version + 1,
                "updated_at": now,
            }
            if is_full_analysis:
                values["last_full_analysis_at"] = now
            else:
                values["incremental_api_calls"] = (row.incremental_api_calls or 0) + 1

            updated = await db.execute(
                update(BulkAnalysisDomain)
                .where(
                    BulkAnalysisDomain.id == domain_id,
                    BulkAnalysisDomain.version == row.version,
                )
                .values(**values)
            )
            if updated.rowcount == 1:
                return True

        logger.debug(f"Version conflict on domain {domain_id} (attempt {attempt + 1}), retrying")

    logger.warning(f"Gave up merging searched keywords for {domain_id} after {MAX_VERSION_RETRIES} attempts")
    return False


# =============================================================================
# API AUDIT LOG
# =============================================================================

async def create_api_log(
    domain_id: str,
    domain: str,
    endpoint: str,
    request_payload: Any,
    keyword_count: int,
    batch_index: int,
    session_factory: Optional[async_sessionmaker] = None,
) -> int:
    """Write the request half of an audit record. Returns the log id."""
    async with get_db_context(session_factory) as db:
        log = RankingApiLog(
            domain_id=domain_id,
            domain=domain,
            endpoint=endpoint,
            request_payload=request_payload,
            keyword_count=keyword_count,
            batch_index=batch_index,
            status="pending",
            requested_at=utcnow(),
        )
        db.add(log)
        await db.flush()
        return log.id


async def complete_api_log(
    log_id: Optional[int],
    status: str,
    items_returned: Optional[int] = None,
    cost_usd: Optional[float] = None,
    task_id: Optional[str] = None,
    http_status: Optional[int] = None,
    error_message: Optional[str] = None,
    response_time_ms: Optional[int] = None,
    session_factory: Optional[async_sessionmaker] = None,
) -> None:
    """Write the response half of an audit record."""
    if log_id is None:
        return

    async with get_db_context(session_factory) as db:
        await db.execute(
            update(RankingApiLog)
            .where(RankingApiLog.id == log_id)
            .values(
                status=status,
                items_returned=items_returned,
                cost_usd=cost_usd,
                task_id=task_id,
                http_status=http_status,
                error_message=error_message,
                response_time_ms=response_time_ms,
                completed_at=utcnow(),
            )
        )
