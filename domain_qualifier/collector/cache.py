"""
Keyword Ranking Cache

Decides, per domain and requested keyword set, which keywords need a fresh
DataForSEO call and which can be served from stored rankings. Search history
is tracked separately because the provider never reports "no result" for a
keyword; it simply omits it.

Two domain-level windows apply:
- refresh-all threshold (default 30 days): past it, everything is refetched
- minimum refetch interval (default 24 hours): inside it, nothing is fetched
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from ..database import repository
from ..database.models import utcnow
from ..models import KeywordRanking

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_ALL_DAYS = 30
DEFAULT_MIN_REFETCH_HOURS = 24


@dataclass
class CacheAnalysis:
    """Result of splitting requested keywords into cached and fetchable sets."""
    new_keywords: List[str]
    existing_keywords: List[str] = field(default_factory=list)
    existing_results: List[KeywordRanking] = field(default_factory=list)
    should_refresh_all: bool = False
    days_since_last_analysis: Optional[int] = None
    api_calls_saved: int = 0
    # Inside the minimum refetch interval new_keywords are deferred, not fetched
    fetch_deferred: bool = False

    def keywords_to_fetch(self, requested: List[str]) -> List[str]:
        """Keywords the caller may send to the provider right now."""
        if self.should_refresh_all:
            return list(requested)
        if self.fetch_deferred:
            return []
        return list(self.new_keywords)

    def to_info(self) -> Dict[str, Any]:
        return {
            "new_keywords": len(self.new_keywords),
            "existing_keywords": len(self.existing_keywords),
            "cached_results": len(self.existing_results),
            "should_refresh_all": self.should_refresh_all,
            "days_since_last_analysis": self.days_since_last_analysis,
            "api_calls_saved": self.api_calls_saved,
            "fetch_deferred": self.fetch_deferred,
        }


class KeywordCache:
    """
    Incremental keyword cache backed by the keyword tables.

    Usage:
        cache = KeywordCache()
        analysis = await cache.analyze_keyword_cache(domain_id, keywords, 2840, "en")
        to_fetch = analysis.keywords_to_fetch(keywords)
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        refresh_all_days: int = DEFAULT_REFRESH_ALL_DAYS,
        min_refetch_hours: int = DEFAULT_MIN_REFETCH_HOURS,
    ):
        self.session_factory = session_factory
        self.refresh_all_hours = refresh_all_days * 24
        self.min_refetch_hours = min_refetch_hours

    async def analyze_keyword_cache(
        self,
        domain_id: str,
        requested_keywords: List[str],
        location_code: int,
        language_code: str,
        now: Optional[datetime] = None,
    ) -> CacheAnalysis:
        """
        Split requested keywords into new (fetch) and existing (serve from store).

        Never raises: any lookup failure means "nothing is cached".
        """
        try:
            return await self._analyze(domain_id, requested_keywords, location_code, language_code, now or utcnow())
        except Exception as e:
            logger.error(f"Keyword cache analysis failed for {domain_id}, treating all keywords as new: {e}")
            return CacheAnalysis(new_keywords=list(requested_keywords))

    async def _analyze(
        self,
        domain_id: str,
        requested_keywords: List[str],
        location_code: int,
        language_code: str,
        now: datetime,
    ) -> CacheAnalysis:
        history = await repository.get_keyword_search_history(
            domain_id, requested_keywords, location_code, language_code,
            session_factory=self.session_factory,
        )

        state = await repository.get_domain_cache_state(domain_id, session_factory=self.session_factory)
        last_full_analysis = state["last_full_analysis_at"] if state else None
        if last_full_analysis is None:
            return CacheAnalysis(new_keywords=list(requested_keywords))

        hours_since = (now - last_full_analysis).total_seconds() / 3600
        days_since = int(hours_since // 24)

        if hours_since > self.refresh_all_hours:
            logger.info(f"Domain {domain_id}: last full analysis {days_since} days ago, refreshing all keywords")
            return CacheAnalysis(
                new_keywords=list(requested_keywords),
                should_refresh_all=True,
                days_since_last_analysis=days_since,
            )

        if hours_since < self.min_refetch_hours:
            # Lockout: serve the overlap, defer everything else to the next allowed cycle
            existing = [k for k in requested_keywords if k in history]
            deferred = [k for k in requested_keywords if k not in history]
            if deferred:
                logger.info(
                    f"Domain {domain_id}: within {self.min_refetch_hours}h refetch interval, "
                    f"deferring {len(deferred)} unsearched keywords"
                )
            return await self._with_cached_results(
                domain_id,
                CacheAnalysis(
                    new_keywords=deferred,
                    existing_keywords=existing,
                    days_since_last_analysis=days_since,
                    fetch_deferred=True,
                ),
            )

        new_keywords = []
        existing = []
        for keyword in requested_keywords:
            if keyword in history:
                existing.append(keyword)
            else:
                new_keywords.append(keyword)

        logger.debug(f"Domain {domain_id}: {len(new_keywords)} new, {len(existing)} cached keywords")
        return await self._with_cached_results(
            domain_id,
            CacheAnalysis(
                new_keywords=new_keywords,
                existing_keywords=existing,
                days_since_last_analysis=days_since,
            ),
        )

    async def _with_cached_results(self, domain_id: str, analysis: CacheAnalysis) -> CacheAnalysis:
        if analysis.existing_keywords:
            analysis.existing_results = await repository.get_latest_rankings(
                domain_id, analysis.existing_keywords, session_factory=self.session_factory,
            )
            analysis.api_calls_saved = 1
        return analysis

    async def track_keyword_search(
        self,
        domain_id: str,
        keywords: List[str],
        has_results: bool,
        location_code: int,
        language_code: str,
    ) -> None:
        """Record that keywords were searched (has_results is never downgraded)."""
        await repository.upsert_keyword_search_history(
            domain_id, keywords, has_results, location_code, language_code,
            session_factory=self.session_factory,
        )

    async def update_searched_keywords(
        self,
        domain_id: str,
        new_keywords: List[str],
        is_full_analysis: bool,
    ) -> bool:
        """Merge keywords into the domain's searched set and count the API call."""
        return await repository.merge_searched_keywords(
            domain_id, new_keywords, is_full_analysis,
            session_factory=self.session_factory,
        )

    async def get_cache_stats(self, domain_id: str) -> Optional[Dict[str, Any]]:
        state = await repository.get_domain_cache_state(domain_id, session_factory=self.session_factory)
        if state is None:
            return None

        last_full = state["last_full_analysis_at"]
        return {
            "searched_keyword_count": len(state["searched_keywords"]),
            "total_api_calls": state["total_api_calls"],
            "incremental_api_calls": state["incremental_api_calls"],
            "last_full_analysis_at": last_full.isoformat() if last_full else None,
            "refresh_all_after_days": self.refresh_all_hours // 24,
            "min_refetch_hours": self.min_refetch_hours,
        }
