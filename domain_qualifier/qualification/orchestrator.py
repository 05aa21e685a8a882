"""
Qualification Orchestrator

Runs ranking-data collection and judging for a batch of domains:

1. Categorize each domain by the work it still needs
2. Run the groups concurrently (needs-both fetches first, then judges)
3. Match high/good verdicts to the client's target URLs
4. Persist verdicts and report exactly one progress record per domain

No single domain's failure fails the batch. A domain that fails a stage
keeps its previous qualification status and can simply be retried.
"""

import asyncio
import logging
import re
import time
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy.ext.asyncio import async_sessionmaker

from ..analyzer.judge import QualificationJudge
from ..collector.rankings import RankingDataService
from ..database import repository
from ..database.models import BulkAnalysisDomain, QualificationStatus, TargetPage
from ..models import (
    ClientContext,
    DomainRankingData,
    QualificationEvidence,
    QualificationResult,
    TargetMatchResult,
)
from ..utils.config import Settings, get_settings
from ..utils.safety import best_effort_call
from .limiter import ConcurrencyLimiter
from .models import (
    DomainGroups,
    DomainQualificationProgress,
    QualificationOptions,
    SmartSelectionFilters,
)

logger = logging.getLogger(__name__)

UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class QualificationOrchestrator:
    """
    Master qualification service.

    Owns three limiters: a per-domain limiter wrapping every unit of work,
    and one per expensive stage (ranking provider, reasoning model) nested
    inside it.

    Usage:
        orchestrator = QualificationOrchestrator()
        progress = await orchestrator.qualify_domains(client_id, domain_ids)
    """

    def __init__(
        self,
        ranking_service: Optional[RankingDataService] = None,
        judge: Optional[QualificationJudge] = None,
        session_factory: Optional[async_sessionmaker] = None,
        settings: Optional[Settings] = None,
        domain_concurrency: Optional[int] = None,
        ranking_concurrency: Optional[int] = None,
        model_concurrency: Optional[int] = None,
    ):
        self.settings = settings or get_settings()
        self.session_factory = session_factory
        self.ranking_service = ranking_service or RankingDataService(
            session_factory=session_factory,
            settings=self.settings,
        )
        self.judge = judge or QualificationJudge(chunk_size=self.settings.JUDGE_CHUNK_SIZE)

        self.domain_limiter = ConcurrencyLimiter(
            "domain", domain_concurrency or self.settings.DOMAIN_CONCURRENCY
        )
        self.ranking_limiter = ConcurrencyLimiter(
            "ranking", ranking_concurrency or self.settings.RANKING_CONCURRENCY
        )
        self.model_limiter = ConcurrencyLimiter(
            "model", model_concurrency or self.settings.MODEL_CONCURRENCY
        )

    # =========================================================================
    # CATEGORIZATION
    # =========================================================================

    @staticmethod
    def categorize_domains(
        domains: Sequence[BulkAnalysisDomain],
        skip_dataforseo: bool = False,
        skip_ai: bool = False,
    ) -> DomainGroups:
        """
        Split domains by the work they need.

        Judging never runs without ranking data: a pending domain with no
        ranking results goes to needs_both unless ranking fetches are skipped,
        in which case it passes through untouched.
        """
        groups = DomainGroups()

        for domain in domains:
            has_rankings = bool(domain.has_ranking_results)
            needs_rankings = not skip_dataforseo and not has_rankings
            needs_ai = not skip_ai and domain.qualification_status == QualificationStatus.PENDING.value

            if needs_ai and not has_rankings and not skip_dataforseo:
                groups.needs_both.append(domain)
            elif needs_rankings and not needs_ai:
                groups.needs_dataforseo_only.append(domain)
            elif needs_ai and has_rankings:
                groups.needs_ai_only.append(domain)
            else:
                groups.already_complete.append(domain)

        return groups

    # =========================================================================
    # MAIN ENTRY POINT
    # =========================================================================

    async def qualify_domains(
        self,
        client_id: str,
        domain_ids: List[str],
        options: Optional[QualificationOptions] = None,
    ) -> List[DomainQualificationProgress]:
        """
        Qualify a batch of domains for a client.

        Returns:
            One progress record per requested domain id, in request order
        """
        options = options or QualificationOptions()
        requested = list(dict.fromkeys(domain_ids))
        started = time.monotonic()

        logger.info(f"Qualification starting for {len(requested)} domains (client {client_id})")

        try:
            domains = await repository.get_domains(client_id, requested, session_factory=self.session_factory)
        except Exception as e:
            logger.error(f"Failed to load domains for client {client_id}: {e}")
            failed = [
                DomainQualificationProgress(domain_id=domain_id, domain="", stage="error", error=str(e))
                for domain_id in requested
            ]
            for record in failed:
                await self._notify(options, record)
            return failed

        found = {domain.id: domain for domain in domains}
        records: Dict[str, DomainQualificationProgress] = {}
        for domain_id in requested:
            domain = found.get(domain_id)
            if domain is None:
                logger.warning(f"Domain {domain_id} not found for client {client_id}")
                records[domain_id] = DomainQualificationProgress(
                    domain_id=domain_id, domain="", stage="error", error="Domain not found",
                )
                await self._notify(options, records[domain_id])
            else:
                records[domain_id] = DomainQualificationProgress(
                    domain_id=domain.id,
                    domain=domain.domain,
                    qualification_status=domain.qualification_status,
                )

        groups = self.categorize_domains(domains, options.skip_dataforseo, options.skip_ai)
        logger.info(f"Domain breakdown: {groups.summary()}")

        for domain in groups.already_complete:
            record = records[domain.id]
            record.stage = "completed"
            record.dataforseo_status = "skipped"
            record.ai_status = "skipped"
            record.suggested_target_url = domain.suggested_target_url
            await self._notify(options, record)

        pending_work = groups.needs_both + groups.needs_dataforseo_only + groups.needs_ai_only
        if pending_work:
            try:
                context = await self._load_client_context(client_id)
                match_context = await self._load_match_context(client_id, options.target_page_ids, context)
            except Exception as e:
                logger.error(f"Failed to load target pages for client {client_id}: {e}")
                for domain in pending_work:
                    self._mark_error(records[domain.id], str(e))
                    await self._notify(options, records[domain.id])
            else:
                await self._run_groups(groups, records, context, match_context, options)

        total_ms = _elapsed_ms(started)
        logger.info(
            f"Qualification complete in {total_ms / 1000:.2f}s "
            f"({total_ms / max(len(requested), 1):.0f}ms per domain)"
        )
        return [records[domain_id] for domain_id in requested]

    async def _run_groups(
        self,
        groups: DomainGroups,
        records: Dict[str, DomainQualificationProgress],
        context: ClientContext,
        match_context: ClientContext,
        options: QualificationOptions,
    ) -> None:
        pipelines: List[Tuple[List[BulkAnalysisDomain], object]] = []

        if groups.needs_both:
            pipelines.append((groups.needs_both, self._process_both(
                groups.needs_both, records, context, match_context, options,
            )))
        if groups.needs_dataforseo_only:
            pipelines.append((groups.needs_dataforseo_only, self._run_fetch_batch(
                groups.needs_dataforseo_only, records, context, options,
            )))
        if groups.needs_ai_only:
            pipelines.append((groups.needs_ai_only, self._run_judge_batch(
                groups.needs_ai_only, records, context, match_context, options,
            )))

        outcomes = await asyncio.gather(*(coro for _, coro in pipelines), return_exceptions=True)

        for (group, _), outcome in zip(pipelines, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"Qualification group of {len(group)} domains failed: {outcome}")
                for domain in group:
                    record = records[domain.id]
                    if record.stage not in ("completed", "error"):
                        self._mark_error(record, str(outcome))

    async def _process_both(
        self,
        domains: List[BulkAnalysisDomain],
        records: Dict[str, DomainQualificationProgress],
        context: ClientContext,
        match_context: ClientContext,
        options: QualificationOptions,
    ) -> None:
        fetched = await self._run_fetch_batch(domains, records, context, options)
        ready = [domain for domain, ok in zip(domains, fetched) if ok]

        skipped = len(domains) - len(ready)
        if skipped:
            logger.info(f"{skipped} domains left pending after failed ranking fetch")
        if ready:
            await self._run_judge_batch(ready, records, context, match_context, options)

    # =========================================================================
    # RANKING STAGE
    # =========================================================================

    async def _run_fetch_batch(
        self,
        domains: List[BulkAnalysisDomain],
        records: Dict[str, DomainQualificationProgress],
        context: ClientContext,
        options: QualificationOptions,
    ) -> List[bool]:
        """Fetch rankings for every domain; returns per-domain success flags."""
        logger.info(f"Fetching ranking data for {len(domains)} domains")
        limiter = self.ranking_limiter.within(self.domain_limiter)

        return list(await asyncio.gather(*(
            limiter.run(self._fetch_one, domain, records[domain.id], context, options)
            for domain in domains
        )))

    async def _fetch_one(
        self,
        domain: BulkAnalysisDomain,
        record: DomainQualificationProgress,
        context: ClientContext,
        options: QualificationOptions,
    ) -> bool:
        started = time.monotonic()
        record.stage = "dataforseo_running"
        await self._notify(options, record)

        try:
            keywords = await self._domain_keywords(domain, context)
            result = await self.ranking_service.analyze_domain_with_cache(
                domain.id,
                domain.domain,
                keywords,
                options.location_code,
                options.language_code,
            )

            record.dataforseo_status = result.status
            record.keywords_found = result.total_found
            if result.succeeded:
                record.stage = "dataforseo_complete"
                if result.total_found > 0:
                    await repository.update_domain_ranking_status(
                        domain.id, True, results_count=result.total_found,
                        session_factory=self.session_factory,
                    )
            else:
                record.stage = "error"
                record.error = result.error

        except Exception as e:
            logger.error(f"Ranking fetch failed for {domain.domain}: {e}")
            record.dataforseo_status = "error"
            record.stage = "error"
            record.error = str(e)

        record.timings.dataforseo_ms = _elapsed_ms(started)
        record.timings.total_ms = record.timings.dataforseo_ms
        await self._notify(options, record)
        return record.dataforseo_status == "success"

    async def _domain_keywords(self, domain: BulkAnalysisDomain, context: ClientContext) -> List[str]:
        """Keywords of the domain's own target pages, else every client keyword."""
        page_ids = list(domain.target_page_ids or [])
        if page_ids:
            keywords = await repository.get_target_page_keywords(page_ids, session_factory=self.session_factory)
            if keywords:
                return keywords
        return list(context.client_keywords)

    # =========================================================================
    # JUDGE STAGE
    # =========================================================================

    async def _run_judge_batch(
        self,
        domains: List[BulkAnalysisDomain],
        records: Dict[str, DomainQualificationProgress],
        context: ClientContext,
        match_context: ClientContext,
        options: QualificationOptions,
    ) -> None:
        logger.info(f"Judging {len(domains)} domains")
        for domain in domains:
            records[domain.id].stage = "ai_running"
            await self._notify(options, records[domain.id])

        rankings = await repository.get_keyword_rankings(
            [domain.id for domain in domains], session_factory=self.session_factory,
        )
        domain_data = [
            DomainRankingData(domain_id=domain.id, domain=domain.domain, keyword_rankings=rankings.get(domain.id, []))
            for domain in domains
        ]
        limiter = self.model_limiter.within(self.domain_limiter)

        verdicts = await self.judge.qualify_domains(domain_data, context, limiter=limiter)
        by_id = {verdict.domain_id: verdict for verdict in verdicts}

        pairs = [(data, by_id[data.domain_id]) for data in domain_data
                 if data.domain_id in by_id and by_id[data.domain_id].is_qualified_for_matching]
        matches: Dict[str, TargetMatchResult] = {}
        if pairs and match_context.target_pages:
            try:
                for match in await self.judge.match_target_urls(pairs, match_context, limiter=limiter):
                    matches[match.domain_id] = match
            except Exception as e:
                logger.error(f"Target matching failed for {len(pairs)} domains: {e}")

        for domain in domains:
            record = records[domain.id]
            verdict = by_id.get(domain.id)
            if verdict is None:
                self._mark_error(record, record.error or "Qualification failed", stage_field="ai_status")
                await self._notify(options, record)
                continue

            match = matches.get(domain.id)
            try:
                await repository.store_qualification(verdict, match, session_factory=self.session_factory)
            except Exception as e:
                logger.error(f"Failed to store qualification for {domain.domain}: {e}")
                self._mark_error(record, str(e), stage_field="ai_status")
                await self._notify(options, record)
                continue

            record.stage = "completed"
            record.ai_status = "success"
            record.error = None
            record.qualification_status = verdict.qualification
            record.timings.ai_ms = verdict.duration_ms + (match.duration_ms if match else 0)
            record.timings.total_ms = (record.timings.dataforseo_ms or 0) + record.timings.ai_ms

            if not verdict.is_qualified_for_matching or not match_context.target_pages:
                record.target_match_status = "skipped"
            elif match is None:
                record.target_match_status = "error"
            else:
                record.target_match_status = "success"
                record.suggested_target_url = match.best_target_url

            await self._notify(options, record)

    # =========================================================================
    # TARGET PAGES
    # =========================================================================

    async def _load_client_context(self, client_id: str) -> ClientContext:
        pages = await repository.get_active_target_pages(client_id, session_factory=self.session_factory)
        return ClientContext.from_target_pages(pages)

    async def _load_match_context(
        self,
        client_id: str,
        target_page_ids: Optional[List[str]],
        default: ClientContext,
    ) -> ClientContext:
        """Target pages used for matching: the caller's selection, else every active page."""
        resolved = await self.resolve_target_page_ids(client_id, target_page_ids)
        if not resolved:
            return default

        pages: List[TargetPage] = await repository.get_active_target_pages(
            client_id, resolved, session_factory=self.session_factory,
        )
        return ClientContext.from_target_pages(pages)

    async def resolve_target_page_ids(
        self,
        client_id: str,
        values: Optional[List[str]],
    ) -> Optional[List[str]]:
        """
        Accept target page ids or raw URLs; URLs are translated to ids.

        Unresolvable URLs are logged and dropped. Returns None when nothing
        was requested or nothing resolved.
        """
        if not values:
            return None

        ids = [value for value in values if UUID_PATTERN.match(value)]
        urls = [value for value in values if not UUID_PATTERN.match(value)]

        if urls:
            by_url = await repository.find_target_page_ids_by_url(
                client_id, urls, session_factory=self.session_factory,
            )
            for url in urls:
                page_id = by_url.get(url)
                if page_id is None:
                    logger.warning(f"Target page URL not found for client {client_id}, dropping: {url}")
                else:
                    ids.append(page_id)

        ids = list(dict.fromkeys(ids))
        return ids or None

    # =========================================================================
    # STANDALONE OPERATIONS
    # =========================================================================

    async def match_targets_for_domains(
        self,
        client_id: str,
        domain_ids: List[str],
        target_page_ids: Optional[List[str]] = None,
    ) -> List[TargetMatchResult]:
        """
        Target matching for domains that are already high/good quality.

        Domains with any other status are skipped with a log line.
        """
        domains = await repository.get_domains(client_id, domain_ids, session_factory=self.session_factory)
        eligible = [
            domain for domain in domains
            if domain.qualification_status in (
                QualificationStatus.HIGH_QUALITY.value, QualificationStatus.GOOD_QUALITY.value,
            )
        ]
        if len(eligible) < len(domain_ids):
            logger.info(f"Skipping {len(domain_ids) - len(eligible)} domains not qualified for matching")
        if not eligible:
            return []

        context = await self._load_match_context(
            client_id, target_page_ids, await self._load_client_context(client_id),
        )
        rankings = await repository.get_keyword_rankings(
            [domain.id for domain in eligible], session_factory=self.session_factory,
        )

        pairs = []
        for domain in eligible:
            data = DomainRankingData(domain.id, domain.domain, rankings.get(domain.id, []))
            pairs.append((data, self._stored_verdict(domain)))

        matches = await self.judge.match_target_urls(
            pairs, context, limiter=self.model_limiter.within(self.domain_limiter),
        )
        for match in matches:
            try:
                await repository.store_target_match(match, session_factory=self.session_factory)
            except Exception as e:
                logger.error(f"Failed to store target match for {match.domain}: {e}")

        return matches

    @staticmethod
    def _stored_verdict(domain: BulkAnalysisDomain) -> QualificationResult:
        """Rebuild a verdict from the qualification fields stored on a domain."""
        evidence = domain.evidence or {}
        return QualificationResult(
            domain_id=domain.id,
            domain=domain.domain,
            qualification=domain.qualification_status,
            overlap_status=domain.overlap_status or "none",
            authority_direct=domain.authority_direct or "n/a",
            authority_related=domain.authority_related or "n/a",
            topic_scope=domain.topic_scope or "long_tail",
            evidence=QualificationEvidence(
                direct_count=evidence.get("direct_count") or 0,
                direct_median_position=evidence.get("direct_median_position"),
                related_count=evidence.get("related_count") or 0,
                related_median_position=evidence.get("related_median_position"),
            ),
            reasoning=domain.ai_reasoning or "",
        )

    async def get_smart_selection_filters(self, client_id: str) -> SmartSelectionFilters:
        """Domain ids for bulk selection: pending ranking data, pending AI, pending both."""
        domains = await repository.get_client_domains(client_id, session_factory=self.session_factory)
        pending = QualificationStatus.PENDING.value

        return SmartSelectionFilters(
            all_pending_dataforseo=[d.id for d in domains if not d.has_ranking_results],
            all_pending_ai=[d.id for d in domains if d.qualification_status == pending],
            all_pending_both=[
                d.id for d in domains
                if not d.has_ranking_results and d.qualification_status == pending
            ],
        )

    # =========================================================================
    # HELPERS
    # =========================================================================

    @staticmethod
    def _mark_error(record: DomainQualificationProgress, message: str, stage_field: Optional[str] = None) -> None:
        record.stage = "error"
        record.error = message
        if stage_field:
            setattr(record, stage_field, "error")

    @staticmethod
    async def _notify(options: QualificationOptions, record: DomainQualificationProgress) -> None:
        await best_effort_call(options.on_progress, record, description="progress callback")

    async def close(self):
        await self.ranking_service.close()
