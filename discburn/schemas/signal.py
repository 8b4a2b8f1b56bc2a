"""
Signal schemas - envelopes relayed between initiator and executor.

The relay is a shared store anyone may read, so envelopes carry a
timestamp, a declared source and an integrity digest. Payloads are a
tagged union keyed by the envelope type:

    command -> CommandPayload   (burn, cancel, status request, ...)
    status  -> StatusPayload    (progress snapshot of one job)
    ack     -> AckPayload       (acknowledges a command)
    data    -> DataPayload      (anything else)

Envelopes are built by discburn.codec.encode() and never mutated.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

from discburn.errors import ParseError


class SignalType(str, Enum):
    COMMAND = "command"
    STATUS = "status"
    ACK = "ack"
    DATA = "data"


class Direction(str, Enum):
    OUTBOUND = "outbound"
    INBOUND = "inbound"


@dataclass(frozen=True)
class CommandPayload:
    action: str
    job_id: Optional[str] = None
    params: dict[str, Any] = field(default_factory=dict)
    source: Optional[str] = None
    target: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"action": self.action, "params": dict(self.params)}
        if self.job_id is not None:
            result["job_id"] = self.job_id
        if self.source is not None:
            result["source"] = self.source
        if self.target is not None:
            result["target"] = self.target
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CommandPayload":
        return cls(
            action=data["action"],
            job_id=data.get("job_id"),
            params=data.get("params") or {},
            source=data.get("source"),
            target=data.get("target"),
        )


@dataclass(frozen=True)
class StatusPayload:
    job_id: str
    status: str
    progress: int = 0
    error: Optional[str] = None
    updated: Optional[str] = None
    device: Optional[str] = None
    retry_count: int = 0
    source: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "job_id": self.job_id,
            "status": self.status,
            "progress": self.progress,
            "retry_count": self.retry_count,
        }
        for key in ("error", "updated", "device", "source"):
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StatusPayload":
        return cls(
            job_id=data["job_id"],
            status=data["status"],
            progress=int(data.get("progress", 0)),
            error=data.get("error"),
            updated=data.get("updated"),
            device=data.get("device"),
            retry_count=int(data.get("retry_count", 0)),
            source=data.get("source"),
        )


@dataclass(frozen=True)
class AckPayload:
    action: str
    job_id: Optional[str] = None
    detail: Optional[str] = None
    source: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"action": self.action}
        for key in ("job_id", "detail", "source"):
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AckPayload":
        return cls(
            action=data["action"],
            job_id=data.get("job_id"),
            detail=data.get("detail"),
            source=data.get("source"),
        )


@dataclass(frozen=True)
class DataPayload:
    content: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return dict(self.content)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DataPayload":
        return cls(content=dict(data))


SignalPayload = Union[CommandPayload, StatusPayload, AckPayload, DataPayload]

PAYLOAD_TYPES: dict[SignalType, type] = {
    SignalType.COMMAND: CommandPayload,
    SignalType.STATUS: StatusPayload,
    SignalType.ACK: AckPayload,
    SignalType.DATA: DataPayload,
}


def parse_payload(signal_type: SignalType, data: dict[str, Any]) -> SignalPayload:
    """Build the typed payload for `signal_type` from its wire mapping."""
    try:
        return PAYLOAD_TYPES[signal_type].from_dict(data)
    except (KeyError, TypeError, ValueError) as e:
        raise ParseError(f"Malformed {signal_type.value} payload: {e!r}")


@dataclass(frozen=True)
class SignalEnvelope:
    """
    A signed, timestamped unit of inter-agent communication.

    Attributes:
        type: command | status | ack | data
        direction: outbound | inbound, from the sender's point of view
        timestamp: Creation time in epoch milliseconds
        payload: Wire payload (JSON object)
        checksum: Integrity digest of the canonical payload
        source: Declared sender identity
    """
    type: SignalType
    direction: Direction
    timestamp: int
    payload: dict[str, Any]
    checksum: str
    source: Optional[str] = None

    @property
    def signal_id(self) -> str:
        """Identity used for duplicate detection."""
        return f"{self.timestamp}:{self.checksum}"

    @property
    def declared_source(self) -> Optional[str]:
        """Envelope source, falling back to a `source` field in the payload."""
        if self.source:
            return self.source
        embedded = self.payload.get("source") if isinstance(self.payload, dict) else None
        return embedded if isinstance(embedded, str) else None

    def typed_payload(self) -> SignalPayload:
        return parse_payload(self.type, self.payload)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "type": self.type.value,
            "direction": self.direction.value,
            "timestamp": self.timestamp,
            "payload": self.payload,
            "checksum": self.checksum,
        }
        if self.source is not None:
            result["source"] = self.source
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SignalEnvelope":
        if not isinstance(data, dict):
            raise ParseError("Signal envelope must be an object")
        try:
            payload = data["payload"]
            if not isinstance(payload, dict):
                raise ParseError("Signal payload must be an object")
            timestamp = data["timestamp"]
            if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
                raise ParseError(f"Signal timestamp must be numeric, got {timestamp!r}")
            return cls(
                type=SignalType(data["type"]),
                direction=Direction(data.get("direction", Direction.OUTBOUND.value)),
                timestamp=int(timestamp),
                payload=payload,
                checksum=str(data["checksum"]),
                source=data.get("source"),
            )
        except (KeyError, ValueError) as e:
            raise ParseError(f"Malformed signal envelope: {e!r}")
