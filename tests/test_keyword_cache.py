"""
Tests for the incremental keyword cache.

These tests verify:
- Domains with no history fetch everything
- The minimum refetch interval defers unsearched keywords
- The refresh-all threshold overrides per-keyword history
- Search history has_results is never downgraded
- Optimistic merging of searched keywords
"""

from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from domain_qualifier.collector.cache import KeywordCache
from domain_qualifier.database import KeywordSearchHistory, get_db_context, utcnow
from domain_qualifier.database import repository
from domain_qualifier.models import KeywordRanking

LOCATION = 2840
LANGUAGE = "en"


@pytest.fixture
def cache(session_factory):
    return KeywordCache(session_factory=session_factory)


async def _history(session_factory, domain_id):
    async with get_db_context(session_factory) as db:
        result = await db.execute(
            select(KeywordSearchHistory).where(KeywordSearchHistory.bulk_analysis_domain_id == domain_id)
        )
        return {row.keyword: row for row in result.scalars().all()}


# =============================================================================
# CACHE ANALYSIS
# =============================================================================

class TestAnalyzeKeywordCache:
    """Splitting requested keywords into fetch / serve-from-store sets."""

    @pytest.mark.asyncio
    async def test_no_history_everything_is_new(self, cache, client_id, make_domain):
        domain = await make_domain(client_id)
        requested = ["best widgets", "buy widgets online"]

        analysis = await cache.analyze_keyword_cache(domain.id, requested, LOCATION, LANGUAGE)

        assert analysis.new_keywords == requested
        assert analysis.existing_keywords == []
        assert analysis.api_calls_saved == 0
        assert analysis.should_refresh_all is False
        assert analysis.keywords_to_fetch(requested) == requested

    @pytest.mark.asyncio
    async def test_unknown_domain_everything_is_new(self, cache):
        analysis = await cache.analyze_keyword_cache("temp-preview", ["a", "b"], LOCATION, LANGUAGE)
        assert analysis.new_keywords == ["a", "b"]
        assert analysis.api_calls_saved == 0

    @pytest.mark.asyncio
    async def test_lockout_defers_never_searched_keyword(self, cache, client_id, make_domain):
        """Inside the refetch interval even a brand-new keyword is not fetched."""
        domain = await make_domain(client_id, last_full_analysis_at=utcnow() - timedelta(hours=1))
        await cache.track_keyword_search(domain.id, ["best widgets"], True, LOCATION, LANGUAGE)
        requested = ["best widgets", "widget reviews"]

        analysis = await cache.analyze_keyword_cache(domain.id, requested, LOCATION, LANGUAGE)

        assert analysis.should_refresh_all is False
        assert analysis.fetch_deferred is True
        assert "widget reviews" in analysis.new_keywords
        assert analysis.existing_keywords == ["best widgets"]
        assert analysis.keywords_to_fetch(requested) == []

    @pytest.mark.asyncio
    async def test_stale_domain_refreshes_all(self, cache, client_id, make_domain):
        domain = await make_domain(client_id, last_full_analysis_at=utcnow() - timedelta(days=40))
        requested = ["best widgets", "buy widgets online"]
        await cache.track_keyword_search(domain.id, requested, True, LOCATION, LANGUAGE)

        analysis = await cache.analyze_keyword_cache(domain.id, requested[:1], LOCATION, LANGUAGE)

        assert analysis.should_refresh_all is True
        assert analysis.new_keywords == ["best widgets"]
        assert analysis.days_since_last_analysis == 40
        assert analysis.keywords_to_fetch(requested[:1]) == ["best widgets"]

    @pytest.mark.asyncio
    async def test_incremental_window_splits_and_serves_cached(self, cache, session_factory, client_id, make_domain):
        domain = await make_domain(client_id, last_full_analysis_at=utcnow() - timedelta(days=3))
        await cache.track_keyword_search(domain.id, ["best widgets"], True, LOCATION, LANGUAGE)
        await repository.store_keyword_results(
            domain.id,
            [KeywordRanking(keyword="best widgets", position=12, search_volume=5400, url="https://example.com/w")],
            LOCATION, LANGUAGE,
            session_factory=session_factory,
        )

        analysis = await cache.analyze_keyword_cache(
            domain.id, ["best widgets", "widget reviews"], LOCATION, LANGUAGE,
        )

        assert analysis.new_keywords == ["widget reviews"]
        assert analysis.existing_keywords == ["best widgets"]
        assert analysis.api_calls_saved == 1
        assert analysis.days_since_last_analysis == 3
        assert len(analysis.existing_results) == 1
        assert analysis.existing_results[0].position == 12
        assert analysis.existing_results[0].is_from_cache is True

    @pytest.mark.asyncio
    async def test_history_is_scoped_to_location_and_language(self, cache, client_id, make_domain):
        domain = await make_domain(client_id, last_full_analysis_at=utcnow() - timedelta(days=3))
        await cache.track_keyword_search(domain.id, ["best widgets"], True, 2752, "sv")

        analysis = await cache.analyze_keyword_cache(domain.id, ["best widgets"], LOCATION, LANGUAGE)

        assert analysis.new_keywords == ["best widgets"]

    @pytest.mark.asyncio
    async def test_store_failure_fails_open(self, cache):
        """A broken store means "nothing cached", never an error."""
        with patch.object(
            repository, "get_keyword_search_history",
            new=AsyncMock(side_effect=RuntimeError("db down")),
        ):
            analysis = await cache.analyze_keyword_cache("any-id", ["a", "b"], LOCATION, LANGUAGE)

        assert analysis.new_keywords == ["a", "b"]
        assert analysis.should_refresh_all is False


# =============================================================================
# SEARCH HISTORY
# =============================================================================

class TestTrackKeywordSearch:
    """Upsert semantics of keyword search history."""

    @pytest.mark.asyncio
    async def test_has_results_never_downgrades(self, cache, session_factory, client_id, make_domain):
        domain = await make_domain(client_id)

        await cache.track_keyword_search(domain.id, ["best widgets"], True, LOCATION, LANGUAGE)
        await cache.track_keyword_search(domain.id, ["best widgets"], False, LOCATION, LANGUAGE)

        history = await _history(session_factory, domain.id)
        assert history["best widgets"].has_results is True

    @pytest.mark.asyncio
    async def test_has_results_upgrades(self, cache, session_factory, client_id, make_domain):
        domain = await make_domain(client_id)

        await cache.track_keyword_search(domain.id, ["best widgets"], False, LOCATION, LANGUAGE)
        await cache.track_keyword_search(domain.id, ["best widgets"], True, LOCATION, LANGUAGE)

        history = await _history(session_factory, domain.id)
        assert history["best widgets"].has_results is True
        assert len(history) == 1

    @pytest.mark.asyncio
    async def test_duplicate_keywords_in_one_call(self, cache, session_factory, client_id, make_domain):
        domain = await make_domain(client_id)

        await cache.track_keyword_search(domain.id, ["a", "a", "b"], False, LOCATION, LANGUAGE)

        history = await _history(session_factory, domain.id)
        assert sorted(history) == ["a", "b"]


# =============================================================================
# SEARCHED KEYWORDS
# =============================================================================

class TestUpdateSearchedKeywords:
    """Cumulative searched keyword set and API call counters."""

    @pytest.mark.asyncio
    async def test_full_analysis_sets_timestamp(self, cache, client_id, make_domain, load_domain):
        domain = await make_domain(client_id)

        assert await cache.update_searched_keywords(domain.id, ["a", "b"], is_full_analysis=True)

        row = await load_domain(domain.id)
        assert row.searched_keywords == ["a", "b"]
        assert row.last_full_analysis_at is not None
        assert row.total_api_calls == 1
        assert row.incremental_api_calls == 0
        assert row.version == 1

    @pytest.mark.asyncio
    async def test_incremental_merges_and_dedupes(self, cache, client_id, make_domain, load_domain):
        domain = await make_domain(client_id, searched_keywords=["a", "b"])

        await cache.update_searched_keywords(domain.id, ["b", "c"], is_full_analysis=False)

        row = await load_domain(domain.id)
        assert row.searched_keywords == ["a", "b", "c"]
        assert row.last_full_analysis_at is None
        assert row.incremental_api_calls == 1

    @pytest.mark.asyncio
    async def test_unknown_domain_returns_false(self, cache):
        assert await cache.update_searched_keywords("missing", ["a"], is_full_analysis=True) is False

    @pytest.mark.asyncio
    async def test_cache_stats(self, cache, client_id, make_domain):
        domain = await make_domain(client_id)
        await cache.update_searched_keywords(domain.id, ["a", "b"], is_full_analysis=True)

        stats = await cache.get_cache_stats(domain.id)

        assert stats["searched_keyword_count"] == 2
        assert stats["total_api_calls"] == 1
        assert stats["refresh_all_after_days"] == 30
        assert stats["min_refetch_hours"] == 24
