"""
Domain Qualifier - Judge Package

Two-stage reasoning-model evaluation:
- Stage 1: qualify each domain (quality tier, overlap, strength, topic scope)
- Stage 2: match high/good domains to the client's best target URL
"""

from .client import ClaudeClient, ModelCallError
from .parser import JsonParseResult, ModelResponseError, parse_model_json
from .judge import (
    QualificationJudge,
    classify_qualification,
    normalize_qualification,
    parse_qualification_response,
    parse_target_match_response,
)

__all__ = [
    # Client
    "ClaudeClient",
    "ModelCallError",

    # Parsing
    "JsonParseResult",
    "ModelResponseError",
    "parse_model_json",

    # Judge
    "QualificationJudge",
    "classify_qualification",
    "normalize_qualification",
    "parse_qualification_response",
    "parse_target_match_response",
]
