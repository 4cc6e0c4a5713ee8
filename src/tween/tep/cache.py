"""
Redis helpers for the broker's ephemeral records.

Refresh records, consent sessions, authorization requests, and idempotency guards all live in
Redis as JSON strings with a TTL. The client may be configured with or without
``decode_responses`` so every read goes through ``normalize_redis_string``.
"""

import json
from typing import Any, Dict, Optional


def normalize_redis_string(value: Any) -> str:
    """
    Normalize Redis value to string, handling bytes conversion.
    """
    if isinstance(value, bytes):
        return value.decode()
    return str(value)


async def write_record(redis_client, key: str, record: Dict[str, Any], ttl: int) -> None:
    await redis_client.set(key, json.dumps(record), ex=ttl)


async def read_record(redis_client, key: str) -> Optional[Dict[str, Any]]:
    raw = await redis_client.get(key)
    return _load(raw)


async def consume_record(redis_client, key: str) -> Optional[Dict[str, Any]]:
    """Atomically read and delete a record so that only one caller ever receives it."""
    raw = await redis_client.getdel(key)
    return _load(raw)


def _load(raw: Any) -> Optional[Dict[str, Any]]:
    if raw is None:
        return None
    try:
        value = json.loads(normalize_redis_string(raw))
    except ValueError:
        return None
    return value if isinstance(value, dict) else None
