"""
SQLAlchemy Models for the Domain Qualification Pipeline

Design Principles:
1. Ranking rows are append-only snapshots (latest row per keyword wins)
2. Search history is tracked separately from results (the provider never
   says "not found" for a keyword)
3. Qualification fields live on the domain row and only leave "pending"
   after a successful judge call
4. Every provider call is logged (debugging and cost tracking)
"""

import enum
from datetime import datetime, timezone
from typing import List
from uuid import uuid4

from sqlalchemy import (
    Column, String, Integer, Float, Boolean, DateTime, Text,
    ForeignKey, Index, UniqueConstraint, JSON,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp (all DateTime columns store naive UTC)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid4())


# =============================================================================
# ENUMS
# =============================================================================

class QualificationStatus(str, enum.Enum):
    """Qualification verdict stored on a domain"""
    PENDING = "pending"
    HIGH_QUALITY = "high_quality"
    GOOD_QUALITY = "good_quality"
    MARGINAL_QUALITY = "marginal_quality"
    DISQUALIFIED = "disqualified"


class Competition(str, enum.Enum):
    """Advertiser competition level reported by DataForSEO"""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    UNKNOWN = "UNKNOWN"


class TargetPageStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


# =============================================================================
# CLIENTS & TARGET PAGES
# =============================================================================

class Client(Base):
    """Client accounts that own target pages and candidate domains"""
    __tablename__ = "clients"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(255), nullable=False)

    created_at = Column(DateTime, default=utcnow)

    target_pages = relationship("TargetPage", back_populates="client", cascade="all, delete-orphan")
    domains = relationship("BulkAnalysisDomain", back_populates="client", cascade="all, delete-orphan")


class TargetPage(Base):
    """Client page we want links pointing at"""
    __tablename__ = "target_pages"

    id = Column(String(36), primary_key=True, default=new_id)
    client_id = Column(String(36), ForeignKey("clients.id"), nullable=False)

    url = Column(String(2048), nullable=False)
    keywords = Column(Text)  # Comma-separated
    description = Column(Text)
    status = Column(String(20), default=TargetPageStatus.ACTIVE.value, nullable=False)

    created_at = Column(DateTime, default=utcnow)

    client = relationship("Client", back_populates="target_pages")

    __table_args__ = (
        Index("idx_target_page_client_status", "client_id", "status"),
        Index("idx_target_page_url", "client_id", "url"),
    )

    def keyword_list(self) -> List[str]:
        """Split the comma-separated keyword column."""
        if not self.keywords:
            return []
        return [k.strip() for k in self.keywords.split(",") if k.strip()]


# =============================================================================
# CANDIDATE DOMAINS
# =============================================================================

class BulkAnalysisDomain(Base):
    """Candidate website evaluated for a client"""
    __tablename__ = "bulk_analysis_domains"

    id = Column(String(36), primary_key=True, default=new_id)
    client_id = Column(String(36), ForeignKey("clients.id"), nullable=False)

    domain = Column(String(255), nullable=False)  # Lower-cased host
    target_page_ids = Column(JSON, default=list)

    # Ranking data state
    has_ranking_results = Column(Boolean, default=False, nullable=False)
    ranking_results_count = Column(Integer, default=0)
    ranking_last_analyzed_at = Column(DateTime)

    # Incremental keyword cache
    last_full_analysis_at = Column(DateTime)
    searched_keywords = Column(JSON, default=list)
    total_api_calls = Column(Integer, default=0, nullable=False)
    incremental_api_calls = Column(Integer, default=0, nullable=False)
    version = Column(Integer, default=0, nullable=False)  # Optimistic lock for searched_keywords

    # Qualification (AI verdict)
    qualification_status = Column(String(32), default=QualificationStatus.PENDING.value, nullable=False)
    ai_reasoning = Column(Text)
    overlap_status = Column(String(20))
    authority_direct = Column(String(20))
    authority_related = Column(String(20))
    topic_scope = Column(String(20))
    topic_reasoning = Column(Text)
    evidence = Column(JSON)
    ai_qualified_at = Column(DateTime)

    # Target URL matching
    suggested_target_url = Column(String(2048))
    target_match_data = Column(JSON)
    target_matched_at = Column(DateTime)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    client = relationship("Client", back_populates="domains")

    __table_args__ = (
        UniqueConstraint("client_id", "domain", name="uq_bulk_domain_client"),
        Index("idx_bulk_domain_status", "client_id", "qualification_status"),
    )


# =============================================================================
# KEYWORD DATA
# =============================================================================

class KeywordAnalysisResult(Base):
    """One observed ranking; rows are appended, never updated"""
    __tablename__ = "keyword_analysis_results"

    id = Column(Integer, primary_key=True, autoincrement=True)
    # No FK: preview flows store rows under temporary ids
    bulk_analysis_domain_id = Column(String(64), nullable=False)

    keyword = Column(String(500), nullable=False)
    position = Column(Integer, nullable=False)
    search_volume = Column(Integer)
    url = Column(Text)
    cpc = Column(Float)
    competition = Column(String(10), default=Competition.UNKNOWN.value)

    location_code = Column(Integer)
    language_code = Column(String(10))

    analysis_batch_id = Column(String(36))  # Set for incremental calls only
    is_incremental = Column(Boolean, default=False, nullable=False)
    analysis_date = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_keyword_result_domain", "bulk_analysis_domain_id", "keyword", "analysis_date"),
    )


class KeywordSearchHistory(Base):
    """Every (domain, keyword, location, language) we ever asked the provider about"""
    __tablename__ = "keyword_search_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    bulk_analysis_domain_id = Column(String(64), nullable=False)

    keyword = Column(String(500), nullable=False)
    location_code = Column(Integer, nullable=False)
    language_code = Column(String(10), nullable=False)

    has_results = Column(Boolean, default=False, nullable=False)
    searched_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "bulk_analysis_domain_id", "keyword", "location_code", "language_code",
            name="uq_keyword_search",
        ),
    )


class RankingApiLog(Base):
    """Log of every DataForSEO ranked-keywords call - for auditing and cost tracking"""
    __tablename__ = "ranking_api_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)

    domain_id = Column(String(64))
    domain = Column(String(255))

    # Call details
    endpoint = Column(String(255), nullable=False)
    request_payload = Column(JSON)
    keyword_count = Column(Integer)
    batch_index = Column(Integer)

    # Outcome
    status = Column(String(20), default="pending")  # pending, success, error
    http_status = Column(Integer)
    task_id = Column(String(64))
    items_returned = Column(Integer)
    cost_usd = Column(Float)
    error_message = Column(Text)
    response_time_ms = Column(Integer)

    requested_at = Column(DateTime, default=utcnow)
    completed_at = Column(DateTime)

    __table_args__ = (
        Index("idx_ranking_api_log_domain", "domain_id", "requested_at"),
    )
