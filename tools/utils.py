"""Shared helpers for the HTTP collaborators."""

import ssl
from functools import lru_cache

import certifi


@lru_cache(maxsize=1)
def create_ssl_context() -> ssl.SSLContext:
    """SSL context verifying against the certifi CA bundle, built once per process."""
    return ssl.create_default_context(cafile=certifi.where())


def bearer_headers(token: str) -> dict[str, str]:
    """Authorization and content-type headers for JSON APIs."""
    return {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
