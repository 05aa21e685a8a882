"""
Domain Qualifier - Data Models

Shared value types passed between the collector, analyzer and orchestrator.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional


QUALIFICATION_VALUES = ("high_quality", "good_quality", "marginal_quality", "disqualified")
QUALIFIED_FOR_MATCHING = ("high_quality", "good_quality")
OVERLAP_VALUES = ("direct", "related", "both", "none")
AUTHORITY_VALUES = ("strong", "moderate", "weak", "n/a")
TOPIC_SCOPE_VALUES = ("short_tail", "long_tail", "ultra_long_tail")
MATCH_QUALITY_VALUES = ("excellent", "good", "fair", "poor")


@dataclass
class KeywordRanking:
    """One observed search-ranking fact for a domain."""
    keyword: str
    position: int
    search_volume: Optional[int] = None
    url: str = ""
    cpc: Optional[float] = None
    competition: str = "UNKNOWN"
    is_from_cache: bool = False

    def sort_key(self):
        """Position ascending, then volume descending."""
        return (self.position, -(self.search_volume or 0))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "keyword": self.keyword,
            "position": self.position,
            "search_volume": self.search_volume,
            "url": self.url,
            "cpc": self.cpc,
            "competition": self.competition,
            "is_from_cache": self.is_from_cache,
        }


def sort_rankings(rankings: Iterable[KeywordRanking]) -> List[KeywordRanking]:
    return sorted(rankings, key=KeywordRanking.sort_key)


@dataclass
class TargetPageContext:
    """A client target page as seen by the judge."""
    url: str
    keywords: List[str] = field(default_factory=list)
    description: Optional[str] = None
    id: Optional[str] = None


@dataclass
class ClientContext:
    """Read-only client input to the judge."""
    target_pages: List[TargetPageContext]
    client_keywords: List[str]

    @classmethod
    def from_target_pages(cls, pages: Iterable[Any]) -> "ClientContext":
        """Build from TargetPage rows (or anything with url/keyword_list/description)."""
        target_pages = []
        seen = set()
        client_keywords = []
        for page in pages:
            keywords = page.keyword_list()
            target_pages.append(TargetPageContext(
                url=page.url,
                keywords=keywords,
                description=page.description or None,
                id=getattr(page, "id", None),
            ))
            for keyword in keywords:
                if keyword not in seen:
                    seen.add(keyword)
                    client_keywords.append(keyword)
        return cls(target_pages=target_pages, client_keywords=client_keywords)

    @property
    def target_urls(self) -> List[str]:
        return [page.url for page in self.target_pages]


@dataclass
class DomainRankingData:
    """A domain and its full current ranking list."""
    domain_id: str
    domain: str
    keyword_rankings: List[KeywordRanking] = field(default_factory=list)


@dataclass
class QualificationEvidence:
    direct_count: int = 0
    direct_median_position: Optional[float] = None
    related_count: int = 0
    related_median_position: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "direct_count": self.direct_count,
            "direct_median_position": self.direct_median_position,
            "related_count": self.related_count,
            "related_median_position": self.related_median_position,
        }


_TOPIC_REASONING = re.compile(r"\(b\)\s*(.+)", re.DOTALL)


@dataclass
class QualificationResult:
    """First-stage judge verdict for one domain."""
    domain_id: str
    domain: str
    qualification: str
    overlap_status: str
    authority_direct: str
    authority_related: str
    topic_scope: str
    evidence: QualificationEvidence
    reasoning: str
    rule_verdict: Optional[str] = None  # What the rule table says for the model's own signals
    duration_ms: int = 0

    @property
    def is_qualified_for_matching(self) -> bool:
        return self.qualification in QUALIFIED_FOR_MATCHING

    @property
    def topic_reasoning(self) -> Optional[str]:
        """Modifier-strategy hint: the '(b) ...' part of the reasoning, if present."""
        match = _TOPIC_REASONING.search(self.reasoning or "")
        return match.group(1).strip() if match else None


@dataclass
class TargetAnalysis:
    """How well one client target URL fits a domain."""
    target_url: str
    overlap_status: str
    strength_direct: str
    strength_related: str
    match_quality: str
    evidence: Dict[str, Any] = field(default_factory=dict)
    reasoning: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target_url": self.target_url,
            "overlap_status": self.overlap_status,
            "strength_direct": self.strength_direct,
            "strength_related": self.strength_related,
            "match_quality": self.match_quality,
            "evidence": self.evidence,
            "reasoning": self.reasoning,
        }


@dataclass
class TargetMatchResult:
    """Second-stage judge output for one qualified domain."""
    domain_id: str
    domain: str
    target_analysis: List[TargetAnalysis]
    best_target_url: Optional[str]
    recommendation_summary: str = ""
    duration_ms: int = 0

    @property
    def best_match_quality(self) -> Optional[str]:
        """Best match_quality across all analysed targets."""
        qualities = [t.match_quality for t in self.target_analysis if t.match_quality in MATCH_QUALITY_VALUES]
        if not qualities:
            return None
        return min(qualities, key=MATCH_QUALITY_VALUES.index)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target_analysis": [t.to_dict() for t in self.target_analysis],
            "best_target_url": self.best_target_url,
            "recommendation_summary": self.recommendation_summary,
        }


__all__ = [
    "QUALIFICATION_VALUES",
    "QUALIFIED_FOR_MATCHING",
    "OVERLAP_VALUES",
    "AUTHORITY_VALUES",
    "TOPIC_SCOPE_VALUES",
    "MATCH_QUALITY_VALUES",
    "KeywordRanking",
    "sort_rankings",
    "TargetPageContext",
    "ClientContext",
    "DomainRankingData",
    "QualificationEvidence",
    "QualificationResult",
    "TargetAnalysis",
    "TargetMatchResult",
]
