"""
Tests for identifier helpers and the Redis record helpers.
"""

import pytest

from tween.tep.cache import consume_record, normalize_redis_string, read_record, write_record
from tween.tep.identity import (
    fingerprint,
    new_refresh_handle,
    new_session_id,
    split_subject,
    wallet_id_for,
)


class TestIdentifiers:
    @pytest.mark.parametrize(
        "subject,expected",
        [
            ("@alice:example.org", ("alice", "example.org")),
            ("@bob:matrix.example.com:8448", ("bob", "matrix.example.com:8448")),
            ("carol", ("carol", None)),
        ],
    )
    def test_split_subject(self, subject, expected):
        assert split_subject(subject) == expected

    def test_wallet_id(self):
        assert wallet_id_for("@alice:example.org") == "tw__alice_example.org"

    def test_session_and_refresh_handles(self):
        session_id = new_session_id()
        handle = new_refresh_handle()

        assert session_id.startswith("sess_") and len(session_id) == 29
        assert handle.startswith("rt_") and len(handle) == 35
        assert new_refresh_handle() != handle

    def test_fingerprint_truncates(self):
        assert fingerprint("super-secret-value") == "super-..."
        assert fingerprint(None) == "<empty>"


class TestRecords:
    async def test_write_and_read(self, fake_redis_client):
        await write_record(fake_redis_client, "refresh_token:rt_1", {"subject": "@alice:example.org"}, 60)

        assert await read_record(fake_redis_client, "refresh_token:rt_1") == {"subject": "@alice:example.org"}
        assert 0 < await fake_redis_client.ttl("refresh_token:rt_1") <= 60

    async def test_consume_is_single_use(self, fake_redis_client):
        await write_record(fake_redis_client, "consent:abc", {"app_id": "ma_demo"}, 60)

        assert await consume_record(fake_redis_client, "consent:abc") == {"app_id": "ma_demo"}
        assert await consume_record(fake_redis_client, "consent:abc") is None

    async def test_corrupt_record_reads_as_missing(self, fake_redis_client):
        await fake_redis_client.set("consent:bad", "not json")
        await fake_redis_client.set("consent:list", "[1, 2]")

        assert await read_record(fake_redis_client, "consent:bad") is None
        assert await read_record(fake_redis_client, "consent:list") is None

    def test_normalize_redis_string(self):
        assert normalize_redis_string(b"value") == "value"
        assert normalize_redis_string("value") == "value"
