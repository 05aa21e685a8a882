"""
Domain Qualifier - Ranking Data Collection Package

Handles keyword ranking collection from DataForSEO:
- client: HTTP transport with retry
- batching: regex filter packing under the provider's length limit
- cache: incremental keyword cache and search history
- rankings: cache-aware per-domain collection
"""

from .client import DataForSEOClient, DataForSEOError
from .batching import build_keyword_batches, build_regex_filter, escape_keyword, normalize_keywords
from .cache import CacheAnalysis, KeywordCache
from .rankings import (
    DomainAnalysisResult,
    RankingDataService,
    RankingFetchResult,
    clean_domain,
)

__all__ = [
    # Client
    "DataForSEOClient",
    "DataForSEOError",

    # Batching
    "build_keyword_batches",
    "build_regex_filter",
    "escape_keyword",
    "normalize_keywords",

    # Cache
    "CacheAnalysis",
    "KeywordCache",

    # Collection
    "DomainAnalysisResult",
    "RankingDataService",
    "RankingFetchResult",
    "clean_domain",
]
