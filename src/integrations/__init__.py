"""
External integrations.

Modules:
- web_fetch: SSRF-guarded https fetching of web resources (httpx)
"""
from .web_fetch import FetchedResource, fetch_web_resource, is_allowed_web_url, normalize_fetched_name_and_mime

__all__ = ["FetchedResource", "fetch_web_resource", "is_allowed_web_url", "normalize_fetched_name_and_mime"]
