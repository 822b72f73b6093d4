"""Rate limit key builders.

A key builder maps a request to the identity being throttled.
"""

from typing import Callable

from starlette.requests import Request

KeyBuilder = Callable[[Request], str]


def get_client_ip(request: Request) -> str:
    """Extract the client IP from proxy headers or the socket peer.

    Checks, in order: the first hop of X-Forwarded-For, X-Real-IP,
    CF-Connecting-IP (Cloudflare), then the connection address.
    """
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    cf_ip = request.headers.get("CF-Connecting-IP")
    if cf_ip:
        return cf_ip.strip()

    return request.client.host if request.client else "unknown"


def default_key_builder(request: Request) -> str:
    """Key requests by client IP."""
    return f"rate_limit:ip:{get_client_ip(request)}"


def user_key_builder(request: Request) -> str:
    """Key requests by the X-User-ID header, falling back to client IP."""
    user_id = request.headers.get("X-User-ID")
    if not user_id:
        return default_key_builder(request)
    return f"rate_limit:user:{user_id}"


def path_key_builder(request: Request) -> str:
    """Key requests by client IP and path."""
    return f"rate_limit:ip:{get_client_ip(request)}:path:{request.url.path}"
