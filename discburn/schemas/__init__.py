"""
discburn.schemas - Data structures shared by the initiator and executor.

JobDescriptor -> Manifest (with StateTransition history and AuditEntry log)
SignalEnvelope (with a typed payload per SignalType)

Everything here is pure data: serialization to and from the JSON objects
kept in the store, no I/O.
"""

from .job import (
    Priority,
    JobStatus,
    JobDescriptor,
    sort_by_priority,
)
from .manifest import (
    MANIFEST_VERSION,
    MANIFEST_SCHEMA,
    Manifest,
    StateTransition,
    AuditEntry,
    TargetDevice,
    DiscSettings,
    PayloadFile,
)
from .signal import (
    SignalType,
    Direction,
    SignalEnvelope,
    CommandPayload,
    StatusPayload,
    AckPayload,
    DataPayload,
    SignalPayload,
    parse_payload,
)

__all__ = [
    # Jobs
    "Priority",
    "JobStatus",
    "JobDescriptor",
    "sort_by_priority",
    # Manifest
    "MANIFEST_VERSION",
    "MANIFEST_SCHEMA",
    "Manifest",
    "StateTransition",
    "AuditEntry",
    "TargetDevice",
    "DiscSettings",
    "PayloadFile",
    # Signals
    "SignalType",
    "Direction",
    "SignalEnvelope",
    "CommandPayload",
    "StatusPayload",
    "AckPayload",
    "DataPayload",
    "SignalPayload",
    "parse_payload",
]
