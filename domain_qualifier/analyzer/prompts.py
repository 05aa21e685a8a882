"""
Prompt templates for the qualification judge.

Both prompts embed the same overlap/strength framework so the model's
verdicts follow the rule table in judge.classify_qualification.
"""

from typing import List

from ..models import ClientContext, KeywordRanking, QualificationResult, sort_rankings

FRAMEWORK = """\
CLASSIFICATION FRAMEWORK

1. Overlap (compare the site's ranking keywords to the client's keywords):
   - "direct": the site ranks for a highly specific client niche term
   - "related": the site only ranks for broader sibling topics of the client's niche
   - "both": direct and related overlap are both present
   - "none": no meaningful overlap

2. Ranking strength, judged separately for direct and related keywords:
   - "strong": positions 1-30
   - "moderate": positions 31-60
   - "weak": positions 61-100
   - "n/a": no keywords in that bucket

3. Verdict:
   - "high_quality": direct overlap AND direct strength strong or moderate
   - "good_quality": direct overlap with weak strength, OR no direct overlap
     but related overlap that is strong or moderate
   - "marginal_quality": some overlap exists but every strength signal is weak
   - "disqualified": no meaningful overlap

4. Topic scope (what kind of article this site could rank with):
   - "short_tail": it can rank for the broad client term unmodified
   - "long_tail": it needs one simple modifier (e.g. "for beginners", "in 2025")
   - "ultra_long_tail": it needs a highly specific multi-modifier angle
"""

QUALIFICATION_TEMPLATE = """\
Qualify the website {domain} as a guest-post placement for our client.

CLIENT TARGET PAGES
{target_pages}

ALL CLIENT KEYWORDS ({keyword_count})
{client_keywords}

{domain} KEYWORD RANKINGS ({ranking_count}, sorted by position)
{rankings}

{framework}
Respond with ONLY this JSON object:
{{
  "qualification": "high_quality | good_quality | marginal_quality | disqualified",
  "overlap_status": "direct | related | both | none",
  "authority_direct": "strong | moderate | weak | n/a",
  "authority_related": "strong | moderate | weak | n/a",
  "topic_scope": "short_tail | long_tail | ultra_long_tail",
  "evidence": {{
    "direct_count": 0,
    "direct_median_position": null,
    "related_count": 0,
    "related_median_position": null
  }},
  "reasoning": "(a) why this verdict, citing keywords and positions. (b) the modifier strategy for an article on this site"
}}
"""

TARGET_MATCH_TEMPLATE = """\
{domain} has been qualified as {qualification} for our client
(overlap: {overlap_status}, direct: {authority_direct}, related: {authority_related}).
Decide which client target URL a guest post on {domain} should link to.

CLIENT TARGET PAGES
{target_pages}

{domain} KEYWORD RANKINGS ({ranking_count}, sorted by position)
{rankings}

{framework}
Evaluate EVERY target URL independently with the overlap and strength rules
above, then grade the match:
   - "excellent": direct overlap with strong or moderate strength
   - "good": direct overlap with weak strength, or strong/moderate related overlap
   - "fair": related overlap with weak strength
   - "poor": little or no overlap with this target's keywords

Respond with ONLY this JSON object:
{{
  "target_analysis": [
    {{
      "target_url": "one of the client target URLs",
      "overlap_status": "direct | related | both | none",
      "strength_direct": "strong | moderate | weak | n/a",
      "strength_related": "strong | moderate | weak | n/a",
      "match_quality": "excellent | good | fair | poor",
      "evidence": {{
        "direct_count": 0,
        "direct_median_position": null,
        "direct_keywords": ["keyword (pos #N)"],
        "related_count": 0,
        "related_median_position": null,
        "related_keywords": ["keyword (pos #N)"]
      }},
      "reasoning": "short justification"
    }}
  ],
  "best_target_url": "the single best target URL",
  "recommendation_summary": "one or two sentences"
}}
"""


def format_target_pages(context: ClientContext) -> str:
    lines = []
    for index, page in enumerate(context.target_pages, 1):
        lines.append(f"{index}. {page.url}")
        lines.append(f"   Keywords: {', '.join(page.keywords) if page.keywords else '(none)'}")
        if page.description:
            lines.append(f"   Description: {page.description}")
    return "\n".join(lines) if lines else "(no target pages)"


def format_rankings(rankings: List[KeywordRanking]) -> str:
    """Full ranking list, no truncation."""
    if not rankings:
        return "(no rankings found)"
    lines = []
    for ranking in sort_rankings(rankings):
        volume = f"{ranking.search_volume:,}" if ranking.search_volume is not None else "n/a"
        lines.append(f"- {ranking.keyword} | pos #{ranking.position} | vol {volume} | {ranking.url}")
    return "\n".join(lines)


def build_qualification_prompt(
    domain: str,
    rankings: List[KeywordRanking],
    context: ClientContext,
) -> str:
    return QUALIFICATION_TEMPLATE.format(
        domain=domain,
        target_pages=format_target_pages(context),
        keyword_count=len(context.client_keywords),
        client_keywords=", ".join(context.client_keywords) or "(none)",
        ranking_count=len(rankings),
        rankings=format_rankings(rankings),
        framework=FRAMEWORK,
    )


def build_target_match_prompt(
    domain: str,
    rankings: List[KeywordRanking],
    verdict: QualificationResult,
    context: ClientContext,
) -> str:
    return TARGET_MATCH_TEMPLATE.format(
        domain=domain,
        qualification=verdict.qualification,
        overlap_status=verdict.overlap_status,
        authority_direct=verdict.authority_direct,
        authority_related=verdict.authority_related,
        target_pages=format_target_pages(context),
        ranking_count=len(rankings),
        rankings=format_rankings(rankings),
        framework=FRAMEWORK,
    )
