"""Tests for blob store implementations and the audit log."""

from datetime import datetime, timezone

import pytest

from discburn.audit import AuditLog
from discburn.errors import ParseError, StoreUnavailable
from discburn.store import FileBlobStore, InMemoryBlobStore, JobPaths, set_aside_manifest


@pytest.fixture(params=["memory", "file"])
def any_store(request, tmp_path):
    if request.param == "memory":
        return InMemoryBlobStore()
    return FileBlobStore(tmp_path / "store")


class TestBlobStoreContract:
    """Both stores behave the same for the operations the agents use."""

    def test_put_get(self, any_store):
        any_store.put("pending/burn-1.json", b"{}")
        assert any_store.get("pending/burn-1.json") == b"{}"

    def test_get_missing(self, any_store):
        assert any_store.get("pending/nope.json") is None

    def test_overwrite(self, any_store):
        any_store.put("status/a.json", b"1")
        any_store.put("status/a.json", b"2")
        assert any_store.get("status/a.json") == b"2"

    def test_list_by_prefix_sorted(self, any_store):
        for name in ("pending/b.json", "pending/a.json", "status/a.json"):
            any_store.put(name, b"x")
        names = [info.name for info in any_store.list("pending/")]
        assert names == ["pending/a.json", "pending/b.json"]

    def test_list_stem_and_size(self, any_store):
        any_store.put("pending/burn-1.json", b"abc")
        (info,) = any_store.list("pending/")
        assert info.stem == "burn-1"
        assert info.size == 3

    def test_list_empty_prefix(self, any_store):
        assert any_store.list("completed/") == []

    def test_delete(self, any_store):
        any_store.put("commands/x-cancel.json", b"{}")
        assert any_store.delete("commands/x-cancel.json") is True
        assert any_store.delete("commands/x-cancel.json") is False
        assert any_store.get("commands/x-cancel.json") is None

    def test_json_helpers(self, any_store):
        any_store.put_json("status/a.json", {"progress": 40})
        assert any_store.get_json("status/a.json") == {"progress": 40}
        assert any_store.get_json("status/missing.json") is None

    def test_corrupt_json(self, any_store):
        any_store.put("status/a.json", b"{broken")
        with pytest.raises(ParseError):
            any_store.get_json("status/a.json")

    @pytest.mark.parametrize("path", ["../escape.json", "pending/../../x", ""])
    def test_rejects_escaping_paths(self, any_store, path):
        with pytest.raises(ValueError):
            any_store.put(path, b"x")


class TestFileBlobStore:

    def test_objects_are_plain_files(self, tmp_path):
        store = FileBlobStore(tmp_path)
        store.put("jobs/burn-1/manifest.json", b"{}")
        assert (tmp_path / "jobs" / "burn-1" / "manifest.json").read_bytes() == b"{}"

    def test_no_temp_files_left(self, tmp_path):
        store = FileBlobStore(tmp_path)
        store.put("pending/a.json", b"{}")
        assert [p.name for p in (tmp_path / "pending").iterdir()] == ["a.json"]

    def test_list_skips_hidden_files(self, tmp_path):
        store = FileBlobStore(tmp_path)
        store.put("pending/a.json", b"{}")
        (tmp_path / "pending" / ".a.json.tmp").write_bytes(b"partial")
        assert [i.name for i in store.list("pending/")] == ["pending/a.json"]

    def test_io_error_becomes_store_unavailable(self, tmp_path):
        store = FileBlobStore(tmp_path)
        # A file where a directory is needed.
        (tmp_path / "jobs").write_bytes(b"")
        with pytest.raises(StoreUnavailable):
            store.put("jobs/burn-1/manifest.json", b"{}")


class TestJobPaths:

    def test_layout(self):
        assert JobPaths.pending("j") == "pending/j.json"
        assert JobPaths.manifest("j") == "jobs/j/manifest.json"
        assert JobPaths.status("j") == "status/j.json"
        assert JobPaths.completed("j") == "completed/j.json"
        assert JobPaths.cancel_marker("j") == "commands/j-cancel.json"

    def test_archive_is_date_partitioned(self):
        when = datetime(2024, 3, 9, 23, 59, tzinfo=timezone.utc)
        assert JobPaths.archive("j", when) == "archive/2024-03-09/j.json"


class TestSetAsideManifest:

    def test_copy_kept_once(self, store):
        path = set_aside_manifest(store, "burn-1", b"{broken")

        assert path.startswith("jobs/burn-1/manifest.unreadable-")
        assert store.get(path) == b"{broken"
        assert set_aside_manifest(store, "burn-1", b"{broken") == path
        assert len(store.list("jobs/burn-1/")) == 1

    def test_each_damaged_version_kept(self, store):
        first = set_aside_manifest(store, "burn-1", b"{broken")
        second = set_aside_manifest(store, "burn-1", b"[also broken")
        assert first != second
        assert store.get(second) == b"[also broken"


class TestAuditLog:

    def test_log_and_read(self, store):
        audit = AuditLog(store)
        audit.log("JOB_SUBMITTED", "discburn-cli", target="burn-1", details={"file_count": 2})
        (entry,) = audit.entries()
        assert entry.action == "JOB_SUBMITTED"
        assert entry.actor == "discburn-cli"
        assert entry.target == "burn-1"
        assert entry.details == {"file_count": 2}
        assert entry.result == "success"

    def test_bounded(self, store):
        audit = AuditLog(store, max_entries=3)
        for i in range(5):
            audit.log(f"ACTION_{i}", "tester")
        assert [e.action for e in audit.entries(limit=10)] == ["ACTION_2", "ACTION_3", "ACTION_4"]

    def test_limit(self, store):
        audit = AuditLog(store)
        for i in range(4):
            audit.log(f"ACTION_{i}", "tester")
        assert [e.action for e in audit.entries(limit=2)] == ["ACTION_2", "ACTION_3"]
        assert audit.entries(limit=0) == []

    def test_unknown_level(self, store):
        with pytest.raises(ValueError):
            AuditLog(store).log("X", "tester", level="critical")

    def test_corrupt_log_starts_over(self, store):
        store.put(JobPaths.AUDIT_LOG, b"{nope")
        audit = AuditLog(store)
        assert audit.entries() == []
        audit.log("RECOVERED", "tester")
        assert [e.action for e in audit.entries()] == ["RECOVERED"]
