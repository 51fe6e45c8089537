"""
Tests for the Notification Cooldown Guard
=========================================
"""

import json
from datetime import timedelta

import httpx
import pytest

from lawman.config import Settings
from lawman.cooldown import (
    CooldownStore,
    FileCooldownStore,
    NotificationCooldownGuard,
    SqlCooldownStore,
    is_not_found_failure,
)
from lawman.db.session import new_session

KEY = "customer-notifications:C1"


@pytest.fixture
def file_store(tmp_path):
    return FileCooldownStore(tmp_path / "cooldowns.json")


class TestShortTier:

    def test_fresh_key_is_not_skipped(self, now):
        assert NotificationCooldownGuard().should_skip(KEY, now) is False

    def test_transient_failure_suppresses_for_short_window(self, now):
        guard = NotificationCooldownGuard()
        guard.record_failure(KEY, is_permanent=False, now=now)

        assert guard.should_skip(KEY, now + timedelta(seconds=59)) is True
        assert guard.should_skip(KEY, now + timedelta(seconds=60)) is False

    def test_short_tier_is_not_persisted(self, file_store, now):
        NotificationCooldownGuard(file_store).record_failure(KEY, is_permanent=False, now=now)

        restarted = NotificationCooldownGuard(file_store)
        assert restarted.should_skip(KEY, now + timedelta(seconds=1)) is False

    def test_keys_are_independent(self, now):
        guard = NotificationCooldownGuard()
        guard.record_failure(KEY, is_permanent=False, now=now)
        assert guard.should_skip("customer-notifications:C2", now) is False


class TestLongTier:

    def test_not_found_suppresses_for_long_window(self, file_store, now):
        guard = NotificationCooldownGuard(file_store)
        guard.record_failure(KEY, is_permanent=True, now=now)

        assert guard.should_skip(KEY, now + timedelta(hours=23, minutes=59)) is True
        assert guard.should_skip(KEY, now + timedelta(hours=24)) is False

    def test_survives_restart(self, file_store, now):
        NotificationCooldownGuard(file_store).record_failure(KEY, is_permanent=True, now=now)

        restarted = NotificationCooldownGuard(file_store)
        assert restarted.should_skip(KEY, now + timedelta(hours=1)) is True
        active = restarted.active_cooldown(KEY, now + timedelta(hours=1))
        assert active.permanent is True
        assert active.until == now + timedelta(hours=24)

    def test_expired_entry_is_cleared_from_store(self, file_store, now):
        NotificationCooldownGuard(file_store).record_failure(KEY, is_permanent=True, now=now)

        guard = NotificationCooldownGuard(file_store)
        assert guard.should_skip(KEY, now + timedelta(days=2)) is False
        assert file_store.get(KEY) is None

    def test_reset_clears_both_tiers(self, file_store, now):
        guard = NotificationCooldownGuard(file_store)
        guard.record_failure(KEY, is_permanent=True, now=now)

        guard.reset(KEY)

        assert guard.should_skip(KEY, now) is False
        assert NotificationCooldownGuard(file_store).should_skip(KEY, now) is False

    def test_success_clears_cooldown(self, file_store, now):
        guard = NotificationCooldownGuard(file_store)
        guard.record_failure(KEY, is_permanent=True, now=now)
        guard.record_success(KEY)
        assert guard.should_skip(KEY, now) is False

    def test_without_store_long_tier_is_memory_only(self, now):
        guard = NotificationCooldownGuard()
        guard.record_failure(KEY, is_permanent=True, now=now)
        assert guard.should_skip(KEY, now + timedelta(hours=12)) is True

    def test_custom_windows(self, now):
        guard = NotificationCooldownGuard(short_window=timedelta(seconds=5), long_window=timedelta(minutes=10))
        guard.record_failure(KEY, is_permanent=True, now=now)
        assert guard.should_skip(KEY, now + timedelta(minutes=9)) is True
        assert guard.should_skip(KEY, now + timedelta(minutes=10)) is False


class TestStores:

    def test_sql_store_survives_restart(self, sqlalchemy_db, now):
        store = SqlCooldownStore(new_session)
        NotificationCooldownGuard(store).record_failure(KEY, is_permanent=True, now=now)

        restarted = NotificationCooldownGuard(SqlCooldownStore(new_session))
        assert restarted.should_skip(KEY, now + timedelta(hours=2)) is True

    def test_sql_store_overwrites(self, sqlalchemy_db, now):
        store = SqlCooldownStore(new_session)
        store.set(KEY, now)
        store.set(KEY, now + timedelta(hours=1))
        assert store.get(KEY) == now + timedelta(hours=1)
        store.delete(KEY)
        assert store.get(KEY) is None

    def test_file_store_writes_json(self, file_store, now):
        file_store.set(KEY, now)
        with open(file_store.path, encoding="utf-8") as f:
            assert json.load(f) == {KEY: now.isoformat()}

    def test_corrupt_file_reads_as_empty(self, file_store):
        file_store.path.write_text("{not json", encoding="utf-8")
        assert file_store.get(KEY) is None

    def test_store_interface_cannot_be_instantiated(self):
        with pytest.raises(TypeError):
            CooldownStore()

    def test_persistent_guard_uses_configured_file(self, tmp_path, now):
        settings = Settings(
            notification_cooldown_file=str(tmp_path / "state" / "cooldowns.json"),
            notification_not_found_cooldown_seconds=3600,
        )
        NotificationCooldownGuard.persistent(settings).record_failure(KEY, is_permanent=True, now=now)

        restarted = NotificationCooldownGuard.persistent(settings)
        assert restarted.should_skip(KEY, now + timedelta(minutes=59)) is True
        assert restarted.should_skip(KEY, now + timedelta(minutes=61)) is False


class TestFailureClassification:

    def _status_error(self, status):
        request = httpx.Request("GET", "http://api.test/api/customers/C1/notifications")
        response = httpx.Response(status, request=request)
        return httpx.HTTPStatusError("failed", request=request, response=response)

    def test_404_is_permanent(self):
        assert is_not_found_failure(self._status_error(404)) is True

    def test_500_is_transient(self):
        assert is_not_found_failure(self._status_error(500)) is False

    def test_network_error_is_transient(self):
        assert is_not_found_failure(httpx.ConnectError("refused")) is False
