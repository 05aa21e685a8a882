"""
Ranking Data Collection

Fetches a domain's keyword rankings from DataForSEO with:
- Cache-aware fetching (only keywords the cache says need it)
- Regex filter batching under the provider's 1000-char limit
- Per-batch failure isolation (a failed batch just returns no data)
- Audit logging of every request/response
- Append-only snapshot persistence
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from uuid import uuid4

from sqlalchemy.ext.asyncio import async_sessionmaker

from ..database import repository
from ..models import KeywordRanking, sort_rankings
from ..utils.config import ConfigurationError, Settings, get_settings
from ..utils.safety import best_effort
from .batching import build_keyword_batches, build_regex_filter, normalize_keywords
from .cache import KeywordCache
from .client import RANKED_KEYWORDS_ENDPOINT, DataForSEOClient

logger = logging.getLogger(__name__)

# Ids with this prefix belong to preview flows that have no domain row
EPHEMERAL_DOMAIN_PREFIX = "temp-"
MAX_DISPLAY_KEYWORDS = 50

COMPETITION_LEVELS = ("LOW", "MEDIUM", "HIGH")

FetchRankings = Callable[[str, str, int, str], Awaitable[Dict[str, Any]]]


@dataclass
class RankingFetchResult:
    """Outcome of one analyze_domain call across all its batches."""
    rankings: List[KeywordRanking]
    batches_total: int = 0
    batches_failed: int = 0
    cost: float = 0.0
    task_id: Optional[str] = None
    # (keywords, produced any result) per batch the provider answered
    searched_batches: List[Tuple[List[str], bool]] = field(default_factory=list)

    @property
    def searched_keywords(self) -> List[str]:
        return [keyword for batch, _ in self.searched_batches for keyword in batch]


@dataclass
class DomainAnalysisResult:
    """Cache-aware ranking analysis for one domain."""
    domain_id: str
    domain: str
    keywords: List[KeywordRanking]
    total_found: int
    status: str  # success, error
    error: Optional[str] = None
    task_id: Optional[str] = None
    cache_info: Dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == "success"


def clean_domain(domain: str) -> str:
    """Normalize a domain to its bare lower-case host."""
    cleaned = domain.strip().lower()
    for prefix in ("https://", "http://"):
        if cleaned.startswith(prefix):
            cleaned = cleaned[len(prefix):]
    if cleaned.startswith("www."):
        cleaned = cleaned[4:]
    return cleaned.split("/")[0]


def _optional_number(value: Any, kind: Callable[[Any], Any]) -> Any:
    if value is None:
        return None
    try:
        return kind(value)
    except (TypeError, ValueError):
        return None


def parse_ranking(item: Dict[str, Any]) -> Optional[KeywordRanking]:
    """Convert a flattened provider item into a KeywordRanking (None if invalid)."""
    keyword = (item.get("keyword") or "").strip().lower()
    try:
        position = int(item.get("position"))
    except (TypeError, ValueError):
        return None
    if not keyword or not 1 <= position <= 100:
        return None

    competition = str(item.get("competition") or "").upper()

    return KeywordRanking(
        keyword=keyword,
        position=position,
        search_volume=_optional_number(item.get("search_volume"), int),
        url=item.get("url") or "",
        cpc=_optional_number(item.get("cpc"), float),
        competition=competition if competition in COMPETITION_LEVELS else "UNKNOWN",
    )


class RankingDataService:
    """
    Collects and stores keyword rankings for candidate domains.

    Usage:
        service = RankingDataService()
        result = await service.analyze_domain_with_cache(
            domain_id, "example.com", ["best widgets"], 2840, "en"
        )
    """

    def __init__(
        self,
        fetch_rankings: Optional[FetchRankings] = None,
        cache: Optional[KeywordCache] = None,
        session_factory: Optional[async_sessionmaker] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Args:
            fetch_rankings: async (domain, regex_filter, location_code, language_code)
                -> {"items", "cost", "task_id"}. Defaults to a DataForSEOClient
                built from settings on first use.
            cache: Keyword cache (defaults to one sharing the session factory)
            session_factory: Database session factory
            settings: Application settings
        """
        self.settings = settings or get_settings()
        self.session_factory = session_factory
        self.cache = cache or KeywordCache(
            session_factory=session_factory,
            refresh_all_days=self.settings.CACHE_REFRESH_ALL_DAYS,
            min_refetch_hours=self.settings.CACHE_MIN_REFETCH_HOURS,
        )
        self._fetch_rankings = fetch_rankings
        self._client: Optional[DataForSEOClient] = None

    def _get_fetcher(self) -> FetchRankings:
        if self._fetch_rankings is None:
            login, password = self.settings.require_dataforseo_credentials()
            self._client = DataForSEOClient(
                login=login,
                password=password,
                timeout=self.settings.RANKING_API_TIMEOUT,
            )
            self._fetch_rankings = self._client.fetch_rankings
        return self._fetch_rankings

    async def close(self):
        if self._client is not None:
            await self._client.close()
            self._client = None

    # =========================================================================
    # CACHE-AWARE ENTRY POINT
    # =========================================================================

    async def analyze_domain_with_cache(
        self,
        domain_id: str,
        domain_name: str,
        keywords: List[str],
        location_code: int = 2840,
        language_code: str = "en",
    ) -> DomainAnalysisResult:
        """
        Rankings for a domain, fetching only what the cache can't serve.

        Never raises: failures come back as status "error" with no keywords.
        """
        domain = clean_domain(domain_name)
        requested = normalize_keywords(keywords)

        try:
            if not requested:
                raise ValueError("No keywords to analyze")

            cache_analysis = await self.cache.analyze_keyword_cache(
                domain_id, requested, location_code, language_code,
            )
            to_fetch = cache_analysis.keywords_to_fetch(requested)

            fetched: List[KeywordRanking] = []
            task_id = None
            if to_fetch:
                is_incremental = (
                    not cache_analysis.should_refresh_all
                    and cache_analysis.days_since_last_analysis is not None
                )
                fetch_result = await self.analyze_domain(
                    domain_id, domain, to_fetch, location_code, language_code,
                    is_incremental=is_incremental,
                )
                fetched = fetch_result.rankings
                task_id = fetch_result.task_id

                # Only answered batches count as searched; zero-result batches are
                # tracked too so known-empty keywords aren't re-queried
                for batch, has_results in fetch_result.searched_batches:
                    await self.cache.track_keyword_search(
                        domain_id, batch, has_results, location_code, language_code,
                    )
                await self.cache.update_searched_keywords(
                    domain_id, fetch_result.searched_keywords, is_full_analysis=not is_incremental,
                )
            else:
                logger.info(f"{domain}: all {len(requested)} keywords served from cache")

            merged = self._merge_results(cache_analysis.existing_results, fetched)
            cache_info = cache_analysis.to_info()
            cache_info["fetched_keywords"] = len(to_fetch)

            return DomainAnalysisResult(
                domain_id=domain_id,
                domain=domain,
                keywords=merged[:MAX_DISPLAY_KEYWORDS],
                total_found=len(merged),
                status="success",
                task_id=task_id,
                cache_info=cache_info,
            )

        except Exception as e:
            logger.error(f"Ranking analysis failed for {domain}: {e}")
            return DomainAnalysisResult(
                domain_id=domain_id,
                domain=domain,
                keywords=[],
                total_found=0,
                status="error",
                error=str(e),
            )

    @staticmethod
    def _merge_results(
        cached: List[KeywordRanking],
        fetched: List[KeywordRanking],
    ) -> List[KeywordRanking]:
        """Fresh rows replace cached rows for the same keyword."""
        by_keyword: Dict[str, KeywordRanking] = {r.keyword: r for r in cached}
        for ranking in fetched:
            by_keyword[ranking.keyword] = ranking
        return sort_rankings(by_keyword.values())

    # =========================================================================
    # PROVIDER FETCH
    # =========================================================================

    async def analyze_domain(
        self,
        domain_id: str,
        domain_name: str,
        keywords: List[str],
        location_code: int = 2840,
        language_code: str = "en",
        is_incremental: bool = False,
    ) -> RankingFetchResult:
        """
        Fetch, parse and store rankings for exactly these keywords.

        Raises:
            ConfigurationError: DataForSEO credentials missing
            RuntimeError: Every batch failed
        """
        fetch = self._get_fetcher()
        domain = clean_domain(domain_name)
        batches = build_keyword_batches(keywords)
        batch_id = str(uuid4()) if is_incremental else None

        logger.info(
            f"Fetching rankings for {domain}: {len(keywords)} keywords in {len(batches)} batches "
            f"({'incremental' if is_incremental else 'full'})"
        )

        result = RankingFetchResult(rankings=[], batches_total=len(batches))
        best: Dict[str, KeywordRanking] = {}
        last_error = None

        for index, batch in enumerate(batches):
            regex_filter = build_regex_filter(batch)
            payload = DataForSEOClient.build_ranked_keywords_payload(
                domain, regex_filter, location_code, language_code,
            )
            log_id = await best_effort(
                repository.create_api_log(
                    domain_id, domain, RANKED_KEYWORDS_ENDPOINT, payload, len(batch), index,
                    session_factory=self.session_factory,
                ),
                "ranking api request log",
            )
            started = time.monotonic()

            try:
                response = await fetch(domain, regex_filter, location_code, language_code)
            except ConfigurationError:
                raise
            except Exception as e:
                result.batches_failed += 1
                last_error = e
                logger.warning(f"Batch {index + 1}/{len(batches)} failed for {domain}: {e}")
                await best_effort(
                    repository.complete_api_log(
                        log_id, "error",
                        http_status=getattr(e, "status_code", None),
                        error_message=str(e),
                        response_time_ms=int((time.monotonic() - started) * 1000),
                        session_factory=self.session_factory,
                    ),
                    "ranking api response log",
                )
                continue

            items = response.get("items") or []
            cost = float(response.get("cost") or 0)
            result.cost += cost
            result.task_id = result.task_id or response.get("task_id")

            parsed = [ranking for ranking in (parse_ranking(item) for item in items) if ranking is not None]
            result.searched_batches.append((batch, bool(parsed)))

            for ranking in parsed:
                current = best.get(ranking.keyword)
                if current is None or ranking.position < current.position:
                    best[ranking.keyword] = ranking

            await best_effort(
                repository.complete_api_log(
                    log_id, "success",
                    items_returned=len(items),
                    cost_usd=cost,
                    task_id=response.get("task_id"),
                    response_time_ms=int((time.monotonic() - started) * 1000),
                    session_factory=self.session_factory,
                ),
                "ranking api response log",
            )

        if batches and result.batches_failed == len(batches):
            raise RuntimeError(f"All {len(batches)} ranking batches failed for {domain}: {last_error}")

        result.rankings = sort_rankings(best.values())

        await repository.store_keyword_results(
            domain_id, result.rankings, location_code, language_code,
            analysis_batch_id=batch_id,
            is_incremental=is_incremental,
            session_factory=self.session_factory,
        )

        if not domain_id.startswith(EPHEMERAL_DOMAIN_PREFIX):
            await repository.update_domain_ranking_status(
                domain_id,
                has_results=len(result.rankings) > 0,
                results_count=len(result.rankings),
                session_factory=self.session_factory,
            )

        logger.info(
            f"{domain}: {len(result.rankings)} rankings from {len(batches) - result.batches_failed}/"
            f"{len(batches)} batches, cost ${result.cost:.4f}"
        )
        return result
