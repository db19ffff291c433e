"""External capabilities: headless browser and plain HTTP fetching."""

from clinic_audit.integrations.http_fetcher import FetchResponse, HttpFetcher

__all__ = ["FetchResponse", "HttpFetcher"]
