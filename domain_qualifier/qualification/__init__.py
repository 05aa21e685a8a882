"""
Domain Qualifier - Qualification Pipeline

Usage:
    from domain_qualifier.qualification import QualificationOrchestrator, QualificationOptions

    orchestrator = QualificationOrchestrator()
    progress = await orchestrator.qualify_domains(client_id, domain_ids, QualificationOptions(skip_ai=True))
"""

from .limiter import ConcurrencyLimiter, NestedLimiter
from .models import (
    DomainGroups,
    DomainQualificationProgress,
    QualificationOptions,
    SmartSelectionFilters,
    StageTimings,
)
from .orchestrator import QualificationOrchestrator

__all__ = [
    "ConcurrencyLimiter",
    "NestedLimiter",
    "DomainGroups",
    "DomainQualificationProgress",
    "QualificationOptions",
    "SmartSelectionFilters",
    "StageTimings",
    "QualificationOrchestrator",
]
