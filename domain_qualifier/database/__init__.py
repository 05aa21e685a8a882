"""
Domain Qualifier Database Layer

Usage:
    from domain_qualifier.database import init_db, get_db_context, BulkAnalysisDomain

    await init_db()

    async with get_db_context() as db:
        await db.execute(select(BulkAnalysisDomain))
"""

# Models
from .models import (
    Base,
    Client,
    TargetPage,
    BulkAnalysisDomain,
    KeywordAnalysisResult,
    KeywordSearchHistory,
    RankingApiLog,
    QualificationStatus,
    Competition,
    TargetPageStatus,
    utcnow,
)

# Session management
from .session import (
    get_database_url,
    create_db_engine,
    get_engine,
    build_session_factory,
    get_session_factory,
    get_db_context,
    init_db,
    dispose_engine,
)

__all__ = [
    "Base",
    "Client",
    "TargetPage",
    "BulkAnalysisDomain",
    "KeywordAnalysisResult",
    "KeywordSearchHistory",
    "RankingApiLog",
    "QualificationStatus",
    "Competition",
    "TargetPageStatus",
    "utcnow",
    "get_database_url",
    "create_db_engine",
    "get_engine",
    "build_session_factory",
    "get_session_factory",
    "get_db_context",
    "init_db",
    "dispose_engine",
]
