"""Unit tests for the local snapshot cache and sync notifications."""

from __future__ import annotations

from foamsync.errors import ErrorKind
from foamsync.models import Job, Organization, OrgSnapshot, WarehouseStock
from foamsync.sync.local_cache import CachedState, LocalCache
from foamsync.sync.notifications import NotificationCenter


def _snapshot() -> OrgSnapshot:
    return OrgSnapshot(
        organization=Organization(id="org-1", name="Acme Foam"),
        jobs=[Job(org_id="org-1", customer_name="Smith")],
        stock=WarehouseStock(org_id="org-1", open_cell_sets=4, closed_cell_sets=2),
    )


class TestLocalCache:
    def test_save_and_load(self, tmp_path):
        cache = LocalCache(tmp_path / "cache")
        outbox = [{"table": "jobs", "operation": "upsert", "payload": {"id": "j1"}}]

        cache.save("owner@acme.com", CachedState(snapshot=_snapshot(), outbox=outbox))
        loaded = cache.load("owner@acme.com")

        assert loaded is not None
        assert loaded.snapshot.stock.open_cell_sets == 4
        assert loaded.snapshot.jobs[0].customer_name == "Smith"
        assert loaded.outbox == outbox

    def test_caches_are_per_username(self, tmp_path):
        cache = LocalCache(tmp_path)
        cache.save("alice", CachedState(snapshot=_snapshot()))

        assert cache.load("bob") is None

    def test_username_is_sanitized(self, tmp_path):
        cache = LocalCache(tmp_path)

        path = cache.path_for("../../etc/passwd")

        assert path.parent == tmp_path
        assert "/" not in path.name

    def test_corrupt_file_is_ignored(self, tmp_path):
        cache = LocalCache(tmp_path)
        cache.path_for("alice").write_text("{not json", encoding="utf-8")

        assert cache.load("alice") is None

    def test_clear(self, tmp_path):
        cache = LocalCache(tmp_path)
        cache.save("alice", CachedState(snapshot=_snapshot()))

        cache.clear("alice")
        cache.clear("alice")

        assert cache.load("alice") is None


class TestNotificationCenter:
    def test_error_wording_by_kind(self):
        center = NotificationCenter()

        transient = center.for_error(ErrorKind.TRANSIENT)
        auth = center.for_error(ErrorKind.AUTHORIZATION)

        assert transient.level == "warning"
        assert transient.message == "Saved locally, will retry"
        assert auth.level == "error"
        assert "sign in again" in auth.message
        assert center.latest is auth

    def test_listener_failures_are_contained(self):
        def listener(notification):
            raise RuntimeError("toast widget gone")

        center = NotificationCenter(listener=listener)

        center.notify("info", "Synced")

        assert len(center.items) == 1

    def test_limit(self):
        center = NotificationCenter(limit=3)
        for index in range(5):
            center.notify("info", str(index))

        assert [item.message for item in center.items] == ["2", "3", "4"]
