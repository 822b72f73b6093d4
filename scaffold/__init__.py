"""apiscaffold: rate limiting and response caching for HTTP services."""
