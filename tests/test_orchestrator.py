"""
Tests for the qualification orchestrator.

These tests verify:
- Categorization, including the forced needs-both rule
- Fetch-before-judge ordering within the needs-both pipeline
- The end-to-end example.com scenario
- Exactly one progress record per requested domain
- Failure semantics (failed stages leave domains pending)
- Target page id / URL resolution
"""

from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from domain_qualifier.analyzer.judge import QualificationJudge
from domain_qualifier.collector.rankings import RankingDataService
from domain_qualifier.database import BulkAnalysisDomain, Client, TargetPage, get_db_context
from domain_qualifier.database import repository
from domain_qualifier.models import KeywordRanking
from domain_qualifier.qualification import QualificationOptions, QualificationOrchestrator

from payloads import qualification_json, ranking_item, target_match_json

WIDGETS_URL = "https://client.com/widgets"
GADGETS_URL = "https://client.com/gadgets"
MATCH_MARKER = "Decide which client target URL"

MARGINAL = dict(
    qualification="marginal_quality", overlap_status="related",
    authority_direct="n/a", authority_related="weak",
)


def judge_responses(match_url=WIDGETS_URL, fail_domains=(), fail_matching=False, **verdict):
    """A judge_fn answering both protocols."""
    calls = []

    async def judge_fn(prompt):
        is_match = MATCH_MARKER in prompt
        calls.append("match" if is_match else "qualify")
        if any(name in prompt for name in fail_domains):
            raise RuntimeError("model unavailable")
        if is_match:
            if fail_matching:
                raise RuntimeError("matching unavailable")
            return target_match_json(match_url)
        return qualification_json(**verdict)

    judge_fn.calls = calls
    return judge_fn


@pytest.fixture
def fetch():
    return AsyncMock(return_value={
        "items": [ranking_item("best widgets", 12, 5400)],
        "cost": 0.01,
        "task_id": "task-1",
    })


@pytest.fixture
def make_orchestrator(session_factory, settings, fetch):
    def _make(judge_fn, **kwargs):
        return QualificationOrchestrator(
            ranking_service=RankingDataService(
                fetch_rankings=fetch, session_factory=session_factory, settings=settings,
            ),
            judge=QualificationJudge(judge_fn=judge_fn),
            session_factory=session_factory,
            settings=settings,
            **kwargs,
        )
    return _make


def _domain(domain_id, has_ranking_results=False, qualification_status="pending"):
    return BulkAnalysisDomain(
        id=domain_id, domain=f"{domain_id}.com",
        has_ranking_results=has_ranking_results, qualification_status=qualification_status,
    )


# =============================================================================
# CATEGORIZATION
# =============================================================================

class TestCategorizeDomains:
    """Pure grouping by the work each domain still needs."""

    def test_pending_without_rankings_is_forced_into_both(self):
        groups = QualificationOrchestrator.categorize_domains([_domain("a")])
        assert [d.id for d in groups.needs_both] == ["a"]
        assert groups.needs_ai_only == []

    def test_groups(self):
        domains = [
            _domain("both"),
            _domain("ai", has_ranking_results=True),
            _domain("rankings", qualification_status="disqualified"),
            _domain("done", has_ranking_results=True, qualification_status="high_quality"),
        ]
        groups = QualificationOrchestrator.categorize_domains(domains)

        assert [d.id for d in groups.needs_both] == ["both"]
        assert [d.id for d in groups.needs_ai_only] == ["ai"]
        assert [d.id for d in groups.needs_dataforseo_only] == ["rankings"]
        assert [d.id for d in groups.already_complete] == ["done"]

    def test_skip_ai_leaves_ranking_fetch(self):
        groups = QualificationOrchestrator.categorize_domains([_domain("a")], skip_ai=True)
        assert [d.id for d in groups.needs_dataforseo_only] == ["a"]

    def test_skipping_rankings_never_judges_without_data(self):
        groups = QualificationOrchestrator.categorize_domains([_domain("a")], skip_dataforseo=True)
        assert [d.id for d in groups.already_complete] == ["a"]
        assert groups.needs_ai_only == []


# =============================================================================
# END TO END
# =============================================================================

class TestQualifyDomains:
    """Full pipeline against a real store and fake providers."""

    @pytest.mark.asyncio
    async def test_example_com_scenario(
        self, make_orchestrator, fetch, client_id, widgets_page, make_domain, load_domain,
    ):
        domain = await make_domain(client_id, "example.com", target_page_ids=[widgets_page.id])
        judge_fn = judge_responses()
        stages = []

        orchestrator = make_orchestrator(judge_fn)
        [progress] = await orchestrator.qualify_domains(
            client_id, [domain.id], QualificationOptions(on_progress=lambda p: stages.append(p.stage)),
        )

        assert progress.stage == "completed"
        assert progress.dataforseo_status == "success"
        assert progress.ai_status == "success"
        assert progress.qualification_status == "high_quality"
        assert progress.keywords_found == 1
        assert progress.target_match_status == "success"
        assert progress.suggested_target_url == WIDGETS_URL
        assert judge_fn.calls == ["qualify", "match"]
        assert stages == ["dataforseo_running", "dataforseo_complete", "ai_running", "completed"]
        assert fetch.await_args.args[1] == "best widgets|buy widgets online"

        row = await load_domain(domain.id)
        assert row.qualification_status == "high_quality"
        assert row.has_ranking_results is True
        assert row.overlap_status == "direct"
        assert row.topic_reasoning == "Add a 'for beginners' modifier."
        assert row.suggested_target_url == WIDGETS_URL
        assert row.target_match_data["best_target_url"] == WIDGETS_URL
        assert row.target_matched_at is not None

    @pytest.mark.asyncio
    async def test_fetch_precedes_judging(self, make_orchestrator, fetch, client_id, widgets_page, make_domain):
        events = []
        domains = [await make_domain(client_id, f"site{i}.com") for i in range(3)]

        async def tracked_fetch(domain, regex_filter, location_code, language_code):
            events.append(("fetch", domain))
            return {"items": [ranking_item("best widgets", 12)], "cost": 0, "task_id": None}

        async def judge_fn(prompt):
            for d in domains:
                if f"website {d.domain} " in prompt:
                    events.append(("judge", d.domain))
            return qualification_json(**MARGINAL)

        fetch.side_effect = tracked_fetch
        results = await make_orchestrator(judge_fn).qualify_domains(client_id, [d.id for d in domains])

        assert all(r.stage == "completed" for r in results)
        for d in domains:
            assert events.index(("fetch", d.domain)) < events.index(("judge", d.domain))

    @pytest.mark.asyncio
    async def test_one_record_per_requested_id_in_order(
        self, make_orchestrator, client_id, widgets_page, make_domain,
    ):
        first = await make_domain(client_id, "first.com")
        done = await make_domain(
            client_id, "done.com", has_ranking_results=True, qualification_status="good_quality",
            suggested_target_url=WIDGETS_URL,
        )
        requested = [first.id, "00000000-0000-0000-0000-000000000000", done.id, first.id]

        results = await make_orchestrator(judge_responses(**MARGINAL)).qualify_domains(client_id, requested)

        assert [r.domain_id for r in results] == [first.id, "00000000-0000-0000-0000-000000000000", done.id]
        assert results[1].stage == "error"
        assert results[1].error == "Domain not found"
        assert results[2].stage == "completed"
        assert results[2].dataforseo_status == "skipped"
        assert results[2].qualification_status == "good_quality"
        assert results[2].suggested_target_url == WIDGETS_URL

    @pytest.mark.asyncio
    async def test_every_record_reaches_progress_callback(
        self, make_orchestrator, client_id, widgets_page, make_domain,
    ):
        done = await make_domain(
            client_id, "done.com", has_ranking_results=True, qualification_status="good_quality",
        )
        missing = "00000000-0000-0000-0000-000000000000"
        seen = []

        results = await make_orchestrator(judge_responses()).qualify_domains(
            client_id, [missing, done.id],
            QualificationOptions(on_progress=lambda p: seen.append((p.domain_id, p.stage))),
        )

        assert seen == [(missing, "error"), (done.id, "completed")]
        assert {r.domain_id for r in results} == {domain_id for domain_id, _ in seen}

    @pytest.mark.asyncio
    async def test_domain_of_other_client_not_found(self, make_orchestrator, session_factory, client_id, make_domain):
        async with get_db_context(session_factory) as db:
            other = Client(name="Other")
            db.add(other)
            await db.flush()
        domain = await make_domain(other.id, "theirs.com")

        [progress] = await make_orchestrator(judge_responses()).qualify_domains(client_id, [domain.id])

        assert progress.stage == "error"

    @pytest.mark.asyncio
    async def test_failed_fetch_stays_pending_and_is_not_judged(
        self, make_orchestrator, fetch, client_id, widgets_page, make_domain, load_domain,
    ):
        fetch.side_effect = RuntimeError("provider down")
        domain = await make_domain(client_id)
        judge_fn = judge_responses()

        [progress] = await make_orchestrator(judge_fn).qualify_domains(client_id, [domain.id])

        assert progress.stage == "error"
        assert progress.dataforseo_status == "error"
        assert progress.ai_status is None
        assert judge_fn.calls == []
        row = await load_domain(domain.id)
        assert row.qualification_status == "pending"
        assert row.has_ranking_results is False

    @pytest.mark.asyncio
    async def test_judge_failure_is_isolated(
        self, make_orchestrator, client_id, widgets_page, make_domain, load_domain,
    ):
        good = await make_domain(client_id, "good.com", has_ranking_results=True)
        bad = await make_domain(client_id, "bad.com", has_ranking_results=True)

        results = await make_orchestrator(judge_responses(fail_domains=("bad.com",), **MARGINAL)).qualify_domains(
            client_id, [good.id, bad.id],
        )

        assert results[0].stage == "completed"
        assert results[0].qualification_status == "marginal_quality"
        assert results[1].stage == "error"
        assert results[1].ai_status == "error"
        assert results[1].qualification_status == "pending"
        assert (await load_domain(bad.id)).qualification_status == "pending"

    @pytest.mark.asyncio
    async def test_matching_failure_keeps_verdict(
        self, make_orchestrator, client_id, widgets_page, make_domain, load_domain,
    ):
        domain = await make_domain(client_id, has_ranking_results=True)

        [progress] = await make_orchestrator(judge_responses(fail_matching=True)).qualify_domains(
            client_id, [domain.id],
        )

        assert progress.stage == "completed"
        assert progress.qualification_status == "high_quality"
        assert progress.target_match_status == "error"
        assert progress.suggested_target_url is None
        row = await load_domain(domain.id)
        assert row.qualification_status == "high_quality"
        assert row.suggested_target_url is None

    @pytest.mark.asyncio
    async def test_marginal_verdict_is_not_matched(self, make_orchestrator, client_id, widgets_page, make_domain):
        domain = await make_domain(client_id, has_ranking_results=True)
        judge_fn = judge_responses(**MARGINAL)

        [progress] = await make_orchestrator(judge_fn).qualify_domains(client_id, [domain.id])

        assert progress.target_match_status == "skipped"
        assert judge_fn.calls == ["qualify"]

    @pytest.mark.asyncio
    async def test_skip_ai_fetches_only(self, make_orchestrator, fetch, client_id, widgets_page, make_domain):
        domain = await make_domain(client_id)
        judge_fn = judge_responses()

        [progress] = await make_orchestrator(judge_fn).qualify_domains(
            client_id, [domain.id], QualificationOptions(skip_ai=True),
        )

        assert progress.stage == "dataforseo_complete"
        assert progress.dataforseo_status == "success"
        fetch.assert_awaited_once()
        assert judge_fn.calls == []

    @pytest.mark.asyncio
    async def test_progress_callback_failure_does_not_break_batch(
        self, make_orchestrator, client_id, widgets_page, make_domain,
    ):
        domain = await make_domain(client_id)

        def broken_callback(progress):
            raise ValueError("ui went away")

        [progress] = await make_orchestrator(judge_responses()).qualify_domains(
            client_id, [domain.id], QualificationOptions(on_progress=broken_callback),
        )

        assert progress.stage == "completed"

    @pytest.mark.asyncio
    async def test_domain_limiter_bounds_in_flight_work(
        self, make_orchestrator, client_id, widgets_page, make_domain,
    ):
        domains = [await make_domain(client_id, f"site{i}.com") for i in range(6)]
        orchestrator = make_orchestrator(judge_responses(**MARGINAL), domain_concurrency=2)

        results = await orchestrator.qualify_domains(client_id, [d.id for d in domains])

        assert len(results) == 6
        assert orchestrator.domain_limiter.peak <= 2
        assert orchestrator.model_limiter.peak <= 2
        assert orchestrator.domain_limiter.active == 0


# =============================================================================
# TARGET PAGES
# =============================================================================

class TestTargetPageResolution:
    """Target page selections may be ids or raw URLs."""

    @pytest_asyncio.fixture
    async def gadgets_page(self, session_factory, client_id):
        async with get_db_context(session_factory) as db:
            page = TargetPage(client_id=client_id, url=GADGETS_URL, keywords="gadget deals")
            db.add(page)
            await db.flush()
            return page

    @pytest.mark.asyncio
    async def test_urls_resolved_and_unknown_dropped(self, make_orchestrator, client_id, widgets_page, gadgets_page):
        orchestrator = make_orchestrator(judge_responses())

        resolved = await orchestrator.resolve_target_page_ids(
            client_id, [widgets_page.id, GADGETS_URL, "https://client.com/unknown"],
        )

        assert resolved == [widgets_page.id, gadgets_page.id]

    @pytest.mark.asyncio
    async def test_nothing_resolved_means_no_restriction(self, make_orchestrator, client_id, widgets_page):
        orchestrator = make_orchestrator(judge_responses())
        assert await orchestrator.resolve_target_page_ids(client_id, ["https://client.com/unknown"]) is None
        assert await orchestrator.resolve_target_page_ids(client_id, None) is None

    @pytest.mark.asyncio
    async def test_matching_uses_restricted_pages(
        self, make_orchestrator, client_id, widgets_page, gadgets_page, make_domain,
    ):
        domain = await make_domain(client_id, has_ranking_results=True)
        prompts = []
        responder = judge_responses(match_url=GADGETS_URL)

        async def judge_fn(prompt):
            prompts.append(prompt)
            return await responder(prompt)

        [progress] = await make_orchestrator(judge_fn).qualify_domains(
            client_id, [domain.id], QualificationOptions(target_page_ids=[GADGETS_URL]),
        )

        match_prompt = next(p for p in prompts if MATCH_MARKER in p)
        assert GADGETS_URL in match_prompt
        assert WIDGETS_URL not in match_prompt
        assert progress.suggested_target_url == GADGETS_URL


# =============================================================================
# STANDALONE OPERATIONS
# =============================================================================

class TestStandaloneOperations:
    """Smart selection filters and re-running target matching."""

    @pytest.mark.asyncio
    async def test_smart_selection_filters(self, make_orchestrator, client_id, make_domain):
        both = await make_domain(client_id, "both.com")
        ai = await make_domain(client_id, "ai.com", has_ranking_results=True)
        rankings = await make_domain(client_id, "rankings.com", qualification_status="disqualified")
        await make_domain(client_id, "done.com", has_ranking_results=True, qualification_status="high_quality")

        filters = await make_orchestrator(judge_responses()).get_smart_selection_filters(client_id)

        assert sorted(filters.all_pending_dataforseo) == sorted([both.id, rankings.id])
        assert sorted(filters.all_pending_ai) == sorted([both.id, ai.id])
        assert filters.all_pending_both == [both.id]

    @pytest.mark.asyncio
    async def test_match_targets_for_qualified_domains(
        self, make_orchestrator, session_factory, client_id, widgets_page, make_domain, load_domain,
    ):
        qualified = await make_domain(
            client_id, "qualified.com", has_ranking_results=True, qualification_status="good_quality",
            overlap_status="direct", authority_direct="weak", authority_related="n/a",
        )
        marginal = await make_domain(client_id, "marginal.com", qualification_status="marginal_quality")
        await repository.store_keyword_results(
            qualified.id, [KeywordRanking(keyword="best widgets", position=70)], 2840, "en",
            session_factory=session_factory,
        )
        judge_fn = judge_responses()

        matches = await make_orchestrator(judge_fn).match_targets_for_domains(client_id, [qualified.id, marginal.id])

        assert [m.domain_id for m in matches] == [qualified.id]
        assert judge_fn.calls == ["match"]
        row = await load_domain(qualified.id)
        assert row.suggested_target_url == WIDGETS_URL
        assert row.qualification_status == "good_quality"
