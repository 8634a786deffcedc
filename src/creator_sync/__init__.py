"""creator-sync - resilient social profile scraping reconciled into a trusted baseline.

Scrapes public creator profile pages politely (rate limiting, relay rotation,
robots.txt compliance, caching) and merges the results into a manually
maintained baseline record with sanity bounds and provenance tracking.
"""

__version__ = "0.1.0"

# Lazy imports to keep ``import creator_sync`` cheap
def __getattr__(name: str):
    if name == "ScrapingContext":
        from creator_sync.context import ScrapingContext
        return ScrapingContext
    if name == "Reconciler":
        from creator_sync.reconciler import Reconciler
        return Reconciler
    if name == "SyncConfig":
        from creator_sync.config import SyncConfig
        return SyncConfig
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
