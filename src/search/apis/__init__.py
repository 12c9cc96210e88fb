"""
HTTP search provider clients.

- SerpAPI (Google Patents, Google Scholar, Google Patents details)
"""

from src.search.apis.base import BaseSearchClient
from src.search.apis.rate_limiter import EndpointLimit, ProviderRateLimiter
from src.search.apis.serpapi import SerpApiClient

__all__ = [
    "BaseSearchClient",
    "EndpointLimit",
    "ProviderRateLimiter",
    "SerpApiClient",
]
