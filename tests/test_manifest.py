"""Tests for the manifest state machine and manifest serialization."""

import json

import pytest

from discburn.errors import InvalidTransition, ParseError
from discburn.manifest import (
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    calculate_payload_checksum,
    create_manifest,
    is_valid_transition,
    rebuild_manifest,
    record_action,
    transition,
)
from discburn.schemas import JobDescriptor, JobStatus, Manifest, Priority, sort_by_priority


ALL_STATES = list(JobStatus)


@pytest.fixture
def manifest():
    return create_manifest("burn-TEST000001", ["/data/a.pdf", "/data/b.pdf"], priority="high")


class TestCreateManifest:
    """New manifests start in `created` with one history record."""

    def test_initial_state(self, manifest):
        assert manifest.current_state == JobStatus.CREATED
        assert manifest.status == JobStatus.CREATED
        assert manifest.priority == Priority.HIGH
        assert manifest.retry_count == 0

    def test_initial_history(self, manifest):
        assert len(manifest.states) == 1
        record = manifest.states[0]
        assert record.from_state is None
        assert record.to_state == JobStatus.CREATED
        assert record.actor == "system"
        assert record.reason == "Job initialized"

    def test_initial_audit(self, manifest):
        assert [e.action for e in manifest.audit_log] == ["JOB_CREATED"]
        assert manifest.audit_log[0].details == {"file_count": 2}

    def test_disc_label_and_destinations(self, manifest):
        assert manifest.disc_settings.label == "DiscBurn_TEST000001"
        assert manifest.destinations == ["OneDrive", "SovereignCapsule"]

    def test_unknown_priority(self):
        with pytest.raises(ParseError):
            create_manifest("burn-1", ["/a"], priority="whenever")


class TestTransitionTable:
    """Exactly the table's edges are accepted."""

    @pytest.mark.parametrize("from_state", ALL_STATES)
    @pytest.mark.parametrize("to_state", ALL_STATES)
    def test_table(self, from_state, to_state):
        expected = to_state in VALID_TRANSITIONS[from_state]
        assert is_valid_transition(from_state, to_state) is expected

    def test_complete_is_only_terminal_state(self):
        assert TERMINAL_STATES == frozenset({JobStatus.COMPLETE})

    def test_queued_cannot_skip_to_burning(self):
        assert not is_valid_transition(JobStatus.QUEUED, JobStatus.BURNING)


class TestTransition:
    """transition() appends history and audit atomically."""

    def test_valid_transition_records(self, manifest):
        transition(manifest, JobStatus.PENDING, actor="discburn-cli", reason="submitted")

        assert manifest.current_state == JobStatus.PENDING
        assert manifest.status == JobStatus.PENDING
        assert len(manifest.states) == 2
        last = manifest.states[-1]
        assert (last.from_state, last.to_state) == (JobStatus.CREATED, JobStatus.PENDING)
        assert last.actor == "discburn-cli"
        assert last.reason == "submitted"

        entry = manifest.audit_log[-1]
        assert entry.action == "STATE_TRANSITION"
        assert entry.details == {"from": "created", "to": "pending", "reason": "submitted"}

    def test_updated_moves_forward(self, manifest):
        before = manifest.updated
        transition(manifest, JobStatus.PENDING)
        assert manifest.updated >= before

    def test_invalid_transition_leaves_manifest_untouched(self, manifest):
        states_before = list(manifest.states)
        audit_before = list(manifest.audit_log)

        with pytest.raises(InvalidTransition) as exc_info:
            transition(manifest, JobStatus.BURNING)

        assert exc_info.value.from_state == "created"
        assert exc_info.value.to_state == "burning"
        assert manifest.current_state == JobStatus.CREATED
        assert manifest.states == states_before
        assert manifest.audit_log == audit_before

    def test_complete_is_terminal(self, manifest):
        for state in (JobStatus.PENDING, JobStatus.QUEUED, JobStatus.DOWNLOADING,
                      JobStatus.BURNING, JobStatus.VERIFYING, JobStatus.COMPLETE):
            transition(manifest, state)
        for target in ALL_STATES:
            with pytest.raises(InvalidTransition):
                transition(manifest, target)

    def test_unknown_state_is_invalid_transition(self, manifest):
        with pytest.raises(InvalidTransition) as exc_info:
            transition(manifest, "bogus")

        assert exc_info.value.from_state == "created"
        assert exc_info.value.to_state == "bogus"
        assert manifest.current_state == JobStatus.CREATED
        assert len(manifest.states) == 1

    def test_accepts_string_state(self, manifest):
        transition(manifest, "pending")
        assert manifest.current_state == JobStatus.PENDING

    def test_record_action_keeps_state(self, manifest):
        record_action(manifest, "PROCESSING_ERROR", "discburn-executor", {"error": "boom"})
        assert manifest.current_state == JobStatus.CREATED
        assert manifest.audit_log[-1].action == "PROCESSING_ERROR"
        assert len(manifest.states) == 1


class TestPayloadChecksum:

    def test_order_independent(self):
        assert calculate_payload_checksum(["b", "a", "c"]) == calculate_payload_checksum(["c", "b", "a"])

    def test_prefix(self):
        assert calculate_payload_checksum(["a"]).startswith("sha256:")

    def test_content_sensitive(self):
        assert calculate_payload_checksum(["a"]) != calculate_payload_checksum(["b"])


class TestManifestSerialization:
    """Manifest JSON layout and validation on load."""

    def test_round_trip_preserves_history(self, manifest):
        transition(manifest, JobStatus.PENDING, reason="submitted")
        restored = Manifest.from_json(manifest.to_json())

        assert restored.job_id == manifest.job_id
        assert restored.current_state == JobStatus.PENDING
        assert [(s.from_state, s.to_state) for s in restored.states] == [
            (None, JobStatus.CREATED),
            (JobStatus.CREATED, JobStatus.PENDING),
        ]
        assert restored.file_paths == ["/data/a.pdf", "/data/b.pdf"]

    def test_nested_layout(self, manifest):
        data = json.loads(manifest.to_json())
        assert data["schema"] == "discburn-manifest-v2"
        assert data["job"]["id"] == manifest.job_id
        assert data["lifecycle"]["current_state"] == "created"
        assert data["lifecycle"]["states"][0]["from"] is None

    def test_wrong_schema_rejected(self, manifest):
        data = json.loads(manifest.to_json())
        data["schema"] = "something-else"
        with pytest.raises(ParseError):
            Manifest.from_dict(data)

    def test_inconsistent_current_state_rejected(self, manifest):
        data = json.loads(manifest.to_json())
        data["lifecycle"]["current_state"] = "burning"
        with pytest.raises(ParseError):
            Manifest.from_dict(data)

    def test_garbage_rejected(self):
        with pytest.raises(ParseError):
            Manifest.from_json(b"{not json")


class TestRebuildManifest:

    def test_rebuild_from_descriptor(self):
        descriptor = JobDescriptor(job_id="burn-R", priority=Priority.URGENT, files=["/x"], retry_count=2)
        manifest = rebuild_manifest(descriptor, actor="discburn-executor", reason="manifest missing")

        assert manifest.current_state == JobStatus.CREATED
        assert manifest.retry_count == 2
        assert manifest.priority == Priority.URGENT
        assert manifest.audit_log[-1].action == "MANIFEST_REBUILT"
        assert manifest.audit_log[-1].details == {"reason": "manifest missing"}

    def test_rebuild_cites_preserved_copy(self):
        descriptor = JobDescriptor(job_id="burn-R", files=["/x"])
        copy = "jobs/burn-R/manifest.unreadable-0123456789abcdef.json"
        manifest = rebuild_manifest(descriptor, reason="manifest unreadable: bad json", preserved_as=copy)
        assert manifest.audit_log[-1].details == {
            "reason": "manifest unreadable: bad json",
            "preserved_as": copy,
        }


class TestDescriptors:
    """Job descriptors and priority ordering."""

    def test_sort_by_priority(self):
        jobs = [
            JobDescriptor(job_id="j-low", priority=Priority.LOW),
            JobDescriptor(job_id="j-urgent", priority=Priority.URGENT),
            JobDescriptor(job_id="j-normal", priority=Priority.NORMAL),
            JobDescriptor(job_id="j-high", priority=Priority.HIGH),
        ]
        assert [j.priority for j in sort_by_priority(jobs)] == [
            Priority.URGENT, Priority.HIGH, Priority.NORMAL, Priority.LOW,
        ]

    def test_sort_is_stable(self):
        jobs = [JobDescriptor(job_id=f"j-{i}", priority=Priority.NORMAL) for i in range(5)]
        jobs.insert(2, JobDescriptor(job_id="j-first", priority=Priority.HIGH))
        assert [j.job_id for j in sort_by_priority(jobs)] == [
            "j-first", "j-0", "j-1", "j-2", "j-3", "j-4",
        ]

    def test_parse_defaults_and_aliases(self):
        descriptor = JobDescriptor.from_dict({"jobId": "burn-A", "retryCount": 2, "files": ["/a"]})
        assert descriptor.job_id == "burn-A"
        assert descriptor.retry_count == 2
        assert descriptor.priority == Priority.NORMAL
        assert descriptor.status == JobStatus.PENDING

    def test_missing_job_id(self):
        with pytest.raises(ParseError):
            JobDescriptor.from_dict({"files": []})

    def test_unknown_priority(self):
        with pytest.raises(ParseError):
            JobDescriptor.from_dict({"job_id": "burn-A", "priority": "asap"})

    def test_to_dict_includes_file_count(self):
        descriptor = JobDescriptor(job_id="burn-A", files=["/a", "/b"])
        assert descriptor.to_dict()["file_count"] == 2
