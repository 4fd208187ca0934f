from __future__ import annotations

from collections.abc import Mapping

UNKNOWN_CLIENT = "unknown"


def client_key_from_headers(
    headers: Mapping[str, str],
    peer_host: str | None = None,
) -> str:
    """Rate-limit partition key for an anonymous caller.

    Uses the first hop of ``X-Forwarded-For``. Clients behind one NAT share a
    key; this is not an identity check.
    """
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",", 1)[0].strip()
        if first:
            return first
    if peer_host and peer_host.strip():
        return peer_host.strip()
    return UNKNOWN_CLIENT
