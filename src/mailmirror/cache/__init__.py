# =============================================================================
# Cache Module
# =============================================================================
# In-memory LRU cache of hydrated message bodies, shared by every pipeline
# and by the chat view's body loader.
# =============================================================================

from mailmirror.cache.email_cache import CacheEntry, CacheKey, EmailCache

__all__ = ["CacheEntry", "CacheKey", "EmailCache"]
