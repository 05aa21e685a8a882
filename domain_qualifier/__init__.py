"""
Domain Qualifier

Qualifies candidate websites for guest-post link placement:
1. Collects keyword rankings from DataForSEO (with an incremental keyword cache)
2. Judges topical fit against the client's target pages with Claude
3. Matches qualified domains to the best client target URL
"""

__version__ = "0.1.0"
