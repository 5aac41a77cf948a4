"""
Hand-off to the dispatch backend.

Match requests are pushed onto the ``dispatch:match-requests`` Redis list;
the dispatch service (driver ranking and assignment live there) pops them
and later reports the outcome by updating the trip status.
"""

from __future__ import annotations

import json

import redis.asyncio as aioredis

from ridehold.domain.entities import utcnow

MATCH_REQUEST_QUEUE = "dispatch:match-requests"


async def enqueue_match_request(
    client: aioredis.Redis, trip_id: int, expand_search: bool, attempt: int
) -> int:
    payload = {
        "trip_id": trip_id,
        "expand_search": expand_search,
        "attempt": attempt,
        "requested_at": utcnow().isoformat(),
    }
    return await client.rpush(MATCH_REQUEST_QUEUE, json.dumps(payload))
