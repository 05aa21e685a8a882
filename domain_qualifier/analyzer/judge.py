"""
Qualification Judge

Two request/response protocols against Claude:

1. qualify_domains: one call per domain -> quality tier with structured evidence
2. match_target_urls: one call per qualified domain -> best client target URL

Domains are processed in fixed-size chunks; calls within a chunk run in
parallel. A failed domain is logged and left out of the results, which
callers must read as "retry later", never as a negative verdict.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, Tuple, TypeVar

from ..models import (
    AUTHORITY_VALUES,
    MATCH_QUALITY_VALUES,
    OVERLAP_VALUES,
    QUALIFICATION_VALUES,
    TOPIC_SCOPE_VALUES,
    ClientContext,
    DomainRankingData,
    QualificationEvidence,
    QualificationResult,
    TargetAnalysis,
    TargetMatchResult,
)
from .parser import ModelResponseError, parse_model_json, require_fields
from .prompts import build_qualification_prompt, build_target_match_prompt

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_CHUNK_SIZE = 10
FALLBACK_QUALIFICATION = "marginal_quality"
STRONG_SIGNALS = ("strong", "moderate")

QUALIFICATION_FIELDS = (
    "qualification",
    "overlap_status",
    "authority_direct",
    "authority_related",
    "topic_scope",
    "evidence",
    "reasoning",
)
TARGET_MATCH_FIELDS = ("target_analysis", "best_target_url")

JudgeFn = Callable[[str], Awaitable[str]]


class Limiter(Protocol):
    async def run(self, fn: Callable[[], Awaitable[T]]) -> T: ...


# =============================================================================
# RULE TABLE
# =============================================================================

def classify_qualification(overlap_status: str, authority_direct: str, authority_related: str) -> str:
    """
    Verdict from overlap and strength signals.

    - high_quality: direct overlap, direct strength strong/moderate
    - good_quality: direct overlap but weak, or related strong/moderate
    - marginal_quality: some overlap, every strength signal weak
    - disqualified: no overlap
    """
    overlap = (overlap_status or "").lower()
    direct = (authority_direct or "").lower()
    related = (authority_related or "").lower()

    has_direct = overlap in ("direct", "both")
    has_related = overlap in ("related", "both")

    if not has_direct and not has_related:
        return "disqualified"
    if has_direct and direct in STRONG_SIGNALS:
        return "high_quality"
    if has_direct and direct == "weak":
        return "good_quality"
    if has_related and related in STRONG_SIGNALS:
        return "good_quality"
    return "marginal_quality"


def normalize_qualification(value: Any) -> str:
    """Coerce anything outside the verdict enum to marginal_quality."""
    normalized = str(value or "").strip().lower()
    if normalized in QUALIFICATION_VALUES:
        return normalized
    logger.warning(f"Invalid qualification '{value}' coerced to {FALLBACK_QUALIFICATION}")
    return FALLBACK_QUALIFICATION


def _enum_field(data: Dict[str, Any], name: str, allowed: Sequence[str]) -> str:
    value = str(data.get(name) or "").strip().lower()
    if value not in allowed:
        raise ModelResponseError(f"Invalid {name} '{data.get(name)}'")
    return value


def _optional_number(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _count(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


# =============================================================================
# RESPONSE PARSING
# =============================================================================

def parse_qualification_response(domain: DomainRankingData, text: str) -> QualificationResult:
    """
    Parse a qualification response.

    Raises:
        ModelResponseError: Unparseable JSON, missing or invalid fields
    """
    data = parse_model_json(text).unwrap()
    require_fields(data, QUALIFICATION_FIELDS)

    evidence = data["evidence"]
    if not isinstance(evidence, dict):
        raise ModelResponseError("evidence must be an object")

    overlap = _enum_field(data, "overlap_status", OVERLAP_VALUES)
    authority_direct = _enum_field(data, "authority_direct", AUTHORITY_VALUES)
    authority_related = _enum_field(data, "authority_related", AUTHORITY_VALUES)

    result = QualificationResult(
        domain_id=domain.domain_id,
        domain=domain.domain,
        qualification=normalize_qualification(data["qualification"]),
        overlap_status=overlap,
        authority_direct=authority_direct,
        authority_related=authority_related,
        topic_scope=_enum_field(data, "topic_scope", TOPIC_SCOPE_VALUES),
        evidence=QualificationEvidence(
            direct_count=_count(evidence.get("direct_count")),
            direct_median_position=_optional_number(evidence.get("direct_median_position")),
            related_count=_count(evidence.get("related_count")),
            related_median_position=_optional_number(evidence.get("related_median_position")),
        ),
        reasoning=str(data["reasoning"]),
        rule_verdict=classify_qualification(overlap, authority_direct, authority_related),
    )

    if result.rule_verdict != result.qualification:
        logger.warning(
            f"{domain.domain}: model verdict {result.qualification} disagrees with its own signals "
            f"({overlap}/{authority_direct}/{authority_related} -> {result.rule_verdict})"
        )
    return result


def parse_target_match_response(
    domain: DomainRankingData,
    text: str,
    target_urls: List[str],
) -> TargetMatchResult:
    """
    Parse a target matching response.

    A best_target_url that isn't one of the client's targets is replaced by
    the best-graded analysed target.

    Raises:
        ModelResponseError: Unparseable JSON, missing or invalid fields
    """
    data = parse_model_json(text).unwrap()
    require_fields(data, TARGET_MATCH_FIELDS)

    raw_analysis = data["target_analysis"]
    if not isinstance(raw_analysis, list):
        raise ModelResponseError("target_analysis must be a list")

    analysis = []
    for entry in raw_analysis:
        if not isinstance(entry, dict) or not entry.get("target_url"):
            raise ModelResponseError("target_analysis entries need a target_url")
        analysis.append(TargetAnalysis(
            target_url=str(entry["target_url"]),
            overlap_status=_enum_field(entry, "overlap_status", OVERLAP_VALUES),
            strength_direct=_enum_field(entry, "strength_direct", AUTHORITY_VALUES),
            strength_related=_enum_field(entry, "strength_related", AUTHORITY_VALUES),
            match_quality=_enum_field(entry, "match_quality", MATCH_QUALITY_VALUES),
            evidence=entry.get("evidence") if isinstance(entry.get("evidence"), dict) else {},
            reasoning=str(entry.get("reasoning") or ""),
        ))

    best_url = data.get("best_target_url")
    if best_url not in target_urls:
        candidates = [t for t in analysis if t.target_url in target_urls]
        fallback = min(candidates, key=lambda t: MATCH_QUALITY_VALUES.index(t.match_quality), default=None)
        logger.warning(
            f"{domain.domain}: best_target_url '{best_url}' is not a client target, "
            f"using {fallback.target_url if fallback else None}"
        )
        best_url = fallback.target_url if fallback else None

    return TargetMatchResult(
        domain_id=domain.domain_id,
        domain=domain.domain,
        target_analysis=analysis,
        best_target_url=best_url,
        recommendation_summary=str(data.get("recommendation_summary") or ""),
    )


# =============================================================================
# JUDGE
# =============================================================================

class QualificationJudge:
    """
    Runs both judge protocols with chunked concurrency and per-domain isolation.

    Usage:
        judge = QualificationJudge(judge_fn=ClaudeClient().judge)
        verdicts = await judge.qualify_domains(domains, context)
    """

    def __init__(
        self,
        judge_fn: Optional[JudgeFn] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ):
        """
        Args:
            judge_fn: async prompt -> response text. Defaults to ClaudeClient.judge
                created on first use.
            chunk_size: Domains processed concurrently per chunk
        """
        self._judge_fn = judge_fn
        self.chunk_size = max(1, chunk_size)

    def _get_judge_fn(self) -> JudgeFn:
        if self._judge_fn is None:
            from .client import ClaudeClient
            self._judge_fn = ClaudeClient().judge
        return self._judge_fn

    async def _run_chunked(
        self,
        items: List[Any],
        worker: Callable[[Any], Awaitable[T]],
        label: str,
        limiter: Optional[Limiter] = None,
    ) -> List[T]:
        results: List[T] = []

        for start in range(0, len(items), self.chunk_size):
            chunk = items[start:start + self.chunk_size]

            if limiter is not None:
                tasks = [limiter.run(lambda item=item: worker(item)) for item in chunk]
            else:
                tasks = [worker(item) for item in chunk]
            outcomes = await asyncio.gather(*tasks, return_exceptions=True)

            for item, outcome in zip(chunk, outcomes):
                if isinstance(outcome, BaseException):
                    name = item[0].domain if isinstance(item, tuple) else item.domain
                    logger.error(f"{label} failed for {name}: {outcome}")
                    continue
                results.append(outcome)

        return results

    async def qualify_domains(
        self,
        domains: List[DomainRankingData],
        client_context: ClientContext,
        limiter: Optional[Limiter] = None,
    ) -> List[QualificationResult]:
        """
        Verdict for each domain; failed domains are absent from the result.

        Args:
            domains: Domains with their full ranking lists
            client_context: Client target pages and keywords
            limiter: Optional concurrency limiter wrapped around each call
        """
        logger.info(f"Qualifying {len(domains)} domains in chunks of {self.chunk_size}")

        async def qualify_one(domain: DomainRankingData) -> QualificationResult:
            started = time.monotonic()
            prompt = build_qualification_prompt(domain.domain, domain.keyword_rankings, client_context)
            text = await self._get_judge_fn()(prompt)
            result = parse_qualification_response(domain, text)
            result.duration_ms = int((time.monotonic() - started) * 1000)
            logger.info(f"{domain.domain}: {result.qualification} ({result.overlap_status})")
            return result

        results = await self._run_chunked(domains, qualify_one, "Qualification", limiter)
        logger.info(f"Qualified {len(results)}/{len(domains)} domains")
        return results

    async def match_target_urls(
        self,
        qualified: List[Tuple[DomainRankingData, QualificationResult]],
        client_context: ClientContext,
        limiter: Optional[Limiter] = None,
    ) -> List[TargetMatchResult]:
        """
        Best target URL for each (domain, verdict) pair.

        Callers must only pass high_quality / good_quality verdicts.
        """
        if not client_context.target_pages:
            logger.warning("No target pages to match against")
            return []

        target_urls = client_context.target_urls

        async def match_one(pair: Tuple[DomainRankingData, QualificationResult]) -> TargetMatchResult:
            domain, verdict = pair
            started = time.monotonic()
            prompt = build_target_match_prompt(domain.domain, domain.keyword_rankings, verdict, client_context)
            text = await self._get_judge_fn()(prompt)
            result = parse_target_match_response(domain, text, target_urls)
            result.duration_ms = int((time.monotonic() - started) * 1000)
            logger.info(f"{domain.domain}: best target {result.best_target_url}")
            return result

        results = await self._run_chunked(qualified, match_one, "Target matching", limiter)
        logger.info(f"Matched {len(results)}/{len(qualified)} domains to target URLs")
        return results
