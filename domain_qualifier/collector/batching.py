"""
Keyword regex batching.

DataForSEO accepts one regex filter per ranked_keywords request, capped at
1000 characters. Keywords are escaped and packed into as few
"kw1|kw2|..." filters as possible.
"""

import logging
import re
from typing import Iterable, List

logger = logging.getLogger(__name__)

MAX_FILTER_LENGTH = 1000
SEPARATOR = "|"

_REGEX_SPECIAL = re.compile(r"[.*+?^${}()|\[\]\\]")


def normalize_keywords(keywords: Iterable[str]) -> List[str]:
    """Lower-case, strip and dedupe keywords, keeping first-seen order."""
    seen = set()
    normalized = []
    for keyword in keywords:
        if not keyword:
            continue
        cleaned = " ".join(keyword.lower().split())
        if cleaned and cleaned not in seen:
            seen.add(cleaned)
            normalized.append(cleaned)
    return normalized


def escape_keyword(keyword: str) -> str:
    """Escape regex metacharacters (spaces stay as-is)."""
    return _REGEX_SPECIAL.sub(lambda m: "\\" + m.group(0), keyword)


def filter_length(escaped_keywords: List[str]) -> int:
    """Length of the alternation built from already-escaped keywords."""
    if not escaped_keywords:
        return 0
    return sum(len(k) for k in escaped_keywords) + len(SEPARATOR) * (len(escaped_keywords) - 1)


def build_keyword_batches(keywords: List[str], max_length: int = MAX_FILTER_LENGTH) -> List[List[str]]:
    """
    Pack keywords into batches whose escaped alternation fits max_length.

    First-fit decreasing by escaped length. A keyword that alone exceeds
    the budget is sent in its own batch.

    Returns:
        Batches of the original (unescaped) keywords, each in input order
    """
    indexed = [(index, keyword, escape_keyword(keyword)) for index, keyword in enumerate(keywords) if keyword]
    ordered = sorted(indexed, key=lambda entry: len(entry[2]), reverse=True)

    batches: List[List[tuple]] = []
    lengths: List[int] = []

    for entry in ordered:
        escaped_length = len(entry[2])

        if escaped_length > max_length:
            logger.warning(
                f"Keyword exceeds {max_length}-char filter budget on its own "
                f"({escaped_length} chars), sending alone: {entry[1][:60]}..."
            )
            batches.append([entry])
            lengths.append(escaped_length)
            continue

        for slot, current in enumerate(lengths):
            if current <= max_length and current + len(SEPARATOR) + escaped_length <= max_length:
                batches[slot].append(entry)
                lengths[slot] = current + len(SEPARATOR) + escaped_length
                break
        else:
            batches.append([entry])
            lengths.append(escaped_length)

    return [[keyword for _, keyword, _ in sorted(batch)] for batch in batches]


def build_regex_filter(keywords: List[str]) -> str:
    return SEPARATOR.join(escape_keyword(k) for k in keywords)
