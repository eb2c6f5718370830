"""Tests for the dashboard progress channel."""

from unittest.mock import patch

from sqlalchemy.exc import OperationalError

from substack_intel.core.models import ProgressEvent
from substack_intel.services.progress import DatabaseProgressStore


class TestDatabaseProgressStore:
    """Polling semantics and best-effort delivery."""

    def setup_method(self):
        self.event = ProgressEvent(status="running", progress=40, message="Processing", emails_processed=2)

    def test_get_consumes_updates(self, engine):
        progress = DatabaseProgressStore(engine)
        progress.set("default", self.event)
        progress.set("default", ProgressEvent(status="completed", progress=100))

        updates = progress.get("default")

        assert [u["status"] for u in updates] == ["running", "completed"]
        assert updates[0]["emailsProcessed"] == 2
        assert progress.get("default") == []

    def test_peek_leaves_updates(self, engine):
        progress = DatabaseProgressStore(engine)
        progress.set("default", self.event)

        assert len(progress.get("default", peek=True)) == 1
        assert len(progress.get("default")) == 1

    def test_latest_and_clear(self, engine):
        progress = DatabaseProgressStore(engine)
        progress.set("default", self.event)
        progress.set("default", ProgressEvent(status="completed", progress=100))
        progress.get("default")

        assert progress.latest("default")["status"] == "completed"
        progress.clear("default")
        assert progress.latest("default") is None

    def test_tenants_isolated(self, engine):
        progress = DatabaseProgressStore(engine)
        progress.set("tenant-a", self.event)

        assert progress.get("tenant-b") == []
        assert len(progress.get("tenant-a")) == 1

    def test_max_batch(self, engine):
        progress = DatabaseProgressStore(engine, max_batch=2)
        for step in range(3):
            progress.set("default", ProgressEvent(progress=step))

        assert [u["progress"] for u in progress.get("default")] == [0, 1]
        assert [u["progress"] for u in progress.get("default")] == [2]

    def test_storage_failures_are_swallowed(self, engine):
        progress = DatabaseProgressStore(engine)
        failure = OperationalError("SELECT", {}, Exception("database is locked"))

        with patch("substack_intel.services.progress.get_session", side_effect=failure):
            progress.set("default", self.event)
            assert progress.get("default") == []
            assert progress.latest("default") is None
            progress.clear("default")
