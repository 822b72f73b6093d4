"""Utility functions shared by the middleware."""

from typing import Iterable


def path_matches(path: str, patterns: Iterable[str]) -> bool:
    """Check a request path against skip patterns.

    A pattern matches when it equals the path, or when it ends with ``/*``
    and the path starts with the part before the wildcard.

    Examples:
        >>> path_matches("/health/ready", ["/health/*"])
        True
        >>> path_matches("/healthz", ["/health"])
        False
    """
    for pattern in patterns:
        if pattern == path:
            return True
        if pattern.endswith("/*") and path.startswith(pattern[:-2]):
            return True
    return False
