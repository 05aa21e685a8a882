"""
Qualification pipeline records: options in, progress out.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ..database.models import BulkAnalysisDomain


@dataclass
class StageTimings:
    dataforseo_ms: Optional[int] = None
    ai_ms: Optional[int] = None
    total_ms: Optional[int] = None

    def to_dict(self) -> Dict[str, Optional[int]]:
        return {
            "dataforseo_ms": self.dataforseo_ms,
            "ai_ms": self.ai_ms,
            "total_ms": self.total_ms,
        }


@dataclass
class DomainQualificationProgress:
    """Per-domain outcome of a qualification run (also sent to on_progress)."""
    domain_id: str
    domain: str
    stage: str = "pending"
    dataforseo_status: Optional[str] = None  # success, error, skipped
    ai_status: Optional[str] = None
    target_match_status: Optional[str] = None
    error: Optional[str] = None
    keywords_found: Optional[int] = None
    qualification_status: Optional[str] = None
    suggested_target_url: Optional[str] = None
    timings: StageTimings = field(default_factory=StageTimings)

    @property
    def succeeded(self) -> bool:
        return self.stage == "completed" or (
            self.stage == "dataforseo_complete" and self.dataforseo_status == "success"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "domain_id": self.domain_id,
            "domain": self.domain,
            "stage": self.stage,
            "dataforseo_status": self.dataforseo_status,
            "ai_status": self.ai_status,
            "target_match_status": self.target_match_status,
            "error": self.error,
            "keywords_found": self.keywords_found,
            "qualification_status": self.qualification_status,
            "suggested_target_url": self.suggested_target_url,
            "timings": self.timings.to_dict(),
        }


ProgressCallback = Callable[[DomainQualificationProgress], Any]


@dataclass
class QualificationOptions:
    location_code: int = 2840
    language_code: str = "en"
    skip_dataforseo: bool = False
    skip_ai: bool = False
    target_page_ids: Optional[List[str]] = None  # ids or raw URLs
    on_progress: Optional[ProgressCallback] = None


@dataclass
class DomainGroups:
    """Domains split by the work they still need."""
    needs_both: List[BulkAnalysisDomain] = field(default_factory=list)
    needs_dataforseo_only: List[BulkAnalysisDomain] = field(default_factory=list)
    needs_ai_only: List[BulkAnalysisDomain] = field(default_factory=list)
    already_complete: List[BulkAnalysisDomain] = field(default_factory=list)

    def summary(self) -> Dict[str, int]:
        return {
            "needs_both": len(self.needs_both),
            "needs_dataforseo_only": len(self.needs_dataforseo_only),
            "needs_ai_only": len(self.needs_ai_only),
            "already_complete": len(self.already_complete),
        }


@dataclass
class SmartSelectionFilters:
    """Domain ids per pending state, for bulk selection."""
    all_pending_dataforseo: List[str] = field(default_factory=list)
    all_pending_ai: List[str] = field(default_factory=list)
    all_pending_both: List[str] = field(default_factory=list)
