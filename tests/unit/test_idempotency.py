"""Tests for the in-memory idempotency store."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from src.routing.idempotency import IdempotencyStore


class TestDuplicateDetection:
    def test_unknown_key_is_not_duplicate(self, store: IdempotencyStore) -> None:
        assert store.is_duplicate("SM1") is False

    def test_marked_key_is_duplicate(self, store: IdempotencyStore) -> None:
        store.mark_processed("SM1")
        assert store.is_duplicate("SM1") is True

    def test_empty_key_never_duplicate(self, store: IdempotencyStore) -> None:
        store.mark_processed("")
        assert store.is_duplicate("") is False
        assert len(store) == 0

    def test_keys_are_independent(self, store: IdempotencyStore) -> None:
        store.mark_processed("SM1")
        assert store.is_duplicate("SM2") is False

    def test_discard_removes_record(self, store: IdempotencyStore) -> None:
        store.mark_processed("SM1")
        assert store.discard("SM1") is True
        assert store.is_duplicate("SM1") is False
        assert store.discard("SM1") is False


class TestExpiry:
    def test_default_ttl_is_one_hour(self) -> None:
        store = IdempotencyStore()
        base_time = 1000.0
        with patch("src.routing.idempotency.time") as mock_time:
            mock_time.time.return_value = base_time
            store.mark_processed("SM1")
            mock_time.time.return_value = base_time + 3599
            assert store.is_duplicate("SM1") is True
            mock_time.time.return_value = base_time + 3600
            assert store.is_duplicate("SM1") is False

    def test_custom_ttl_expires(self, store: IdempotencyStore) -> None:
        base_time = 1000.0
        with patch("src.routing.idempotency.time") as mock_time:
            mock_time.time.return_value = base_time
            store.mark_processed("SM1", ttl_seconds=10)
            mock_time.time.return_value = base_time + 11
            assert store.is_duplicate("SM1") is False

    def test_lookup_sweeps_all_expired_records(self, store: IdempotencyStore) -> None:
        """Checking one key removes every expired record, not only that key."""
        base_time = 1000.0
        with patch("src.routing.idempotency.time") as mock_time:
            mock_time.time.return_value = base_time
            store.mark_processed("old-1", ttl_seconds=5)
            store.mark_processed("old-2", ttl_seconds=5)
            store.mark_processed("fresh", ttl_seconds=60)
            mock_time.time.return_value = base_time + 6
            store.is_duplicate("unrelated")
            assert store.keys() == ["fresh"]

    def test_remark_extends_expiry(self, store: IdempotencyStore) -> None:
        base_time = 1000.0
        with patch("src.routing.idempotency.time") as mock_time:
            mock_time.time.return_value = base_time
            store.mark_processed("SM1", ttl_seconds=10)
            mock_time.time.return_value = base_time + 8
            store.mark_processed("SM1", ttl_seconds=10)
            mock_time.time.return_value = base_time + 15
            assert store.is_duplicate("SM1") is True


class TestEviction:
    def test_1001_keys_leave_newest_500(self, store: IdempotencyStore) -> None:
        keys = [f"SM{i:04d}" for i in range(1001)]
        for key in keys:
            store.mark_processed(key)
        assert len(store) == 500
        assert store.keys() == keys[-500:]

    def test_at_cap_nothing_evicted(self, store: IdempotencyStore) -> None:
        for i in range(1000):
            store.mark_processed(f"SM{i}")
        assert len(store) == 1000
        assert store.is_duplicate("SM0") is True

    def test_evicted_key_no_longer_duplicate(self, store: IdempotencyStore) -> None:
        for i in range(1001):
            store.mark_processed(f"SM{i}")
        assert store.is_duplicate("SM0") is False
        assert store.is_duplicate("SM1000") is True

    def test_remarked_key_counts_as_newest(self) -> None:
        store = IdempotencyStore(max_entries=4, keep_entries=2)
        for key in ("a", "b", "c", "d"):
            store.mark_processed(key)
        store.mark_processed("a")
        store.mark_processed("e")
        assert store.keys() == ["a", "e"]

    def test_invalid_bounds_rejected(self) -> None:
        with pytest.raises(ValueError):
            IdempotencyStore(max_entries=10, keep_entries=20)
        with pytest.raises(ValueError):
            IdempotencyStore(max_entries=10, keep_entries=0)
