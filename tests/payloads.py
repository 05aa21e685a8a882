"""
Canned provider payloads shared across tests.
"""

import json
from typing import Any, Dict, List


def ranking_item(keyword: str, position: int, search_volume: int = 1000, url: str = None) -> Dict[str, Any]:
    """A flattened ranked_keywords item as returned by fetch_rankings."""
    return {
        "keyword": keyword,
        "position": position,
        "search_volume": search_volume,
        "url": url or f"https://example.com/{keyword.replace(' ', '-')}",
        "cpc": 1.25,
        "competition": "MEDIUM",
    }


def qualification_json(
    qualification: str = "high_quality",
    overlap_status: str = "direct",
    authority_direct: str = "strong",
    authority_related: str = "n/a",
    topic_scope: str = "long_tail",
    reasoning: str = "(a) Ranks #12 for best widgets. (b) Add a 'for beginners' modifier.",
) -> str:
    return json.dumps({
        "qualification": qualification,
        "overlap_status": overlap_status,
        "authority_direct": authority_direct,
        "authority_related": authority_related,
        "topic_scope": topic_scope,
        "evidence": {
            "direct_count": 1,
            "direct_median_position": 12,
            "related_count": 0,
            "related_median_position": None,
        },
        "reasoning": reasoning,
    })


def target_match_json(best_target_url: str, analyses: List[Dict[str, Any]] = None) -> str:
    analyses = analyses if analyses is not None else [{
        "target_url": best_target_url,
        "overlap_status": "direct",
        "strength_direct": "strong",
        "strength_related": "n/a",
        "match_quality": "excellent",
        "evidence": {"direct_count": 1, "direct_keywords": ["best widgets (pos #12)"]},
        "reasoning": "Ranks for the page's head term.",
    }]
    return json.dumps({
        "target_analysis": analyses,
        "best_target_url": best_target_url,
        "recommendation_summary": "Link to the widgets page.",
    })
