"""
Signal channel - envelopes relayed through the shared store.

Each direction is a bounded ring buffer blob holding the last N envelopes:

    signals/outbound.json   executor -> initiator (status, acks)
    signals/inbound.json    initiator -> executor (commands)

    {"queue": [<envelope>, ...], "last_update": <epoch ms>}

Delivery is at-most-once: a receiver remembers the newest timestamp it has
seen plus recent signal ids, so re-reading the same buffer never yields the
same envelope twice. Everything received goes through the gateway first.

Explicit cancel requests are additionally written as markers at
`commands/<jobId>-cancel.json` so they survive the ring buffer rolling over.
"""

import logging
import time
from collections import deque
from typing import Any, Callable, Optional

from discburn.codec import decode, encode
from discburn.errors import ParseError
from discburn.gateway import SignalGateway
from discburn.schemas import Direction, SignalEnvelope, SignalType
from discburn.store import BlobStore, JobPaths
from discburn.utils import now_ms

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_SIZE = 10
_SEEN_CAPACITY = 256


class SignalChannel:
    """
    One agent's view of the relay: where it sends and where it listens.

    Args:
        store: Shared blob store
        send_path: Ring buffer this agent appends to
        receive_path: Ring buffer this agent reads from
        source: Identity stamped on sent envelopes
        gateway: Policy applied to every received envelope
        buffer_size: Envelopes kept per ring buffer
        signing_key: Shared key for HMAC digests
        clock: Time source (seconds)
    """

    def __init__(
        self,
        store: BlobStore,
        send_path: str,
        receive_path: str,
        source: str,
        gateway: SignalGateway,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        signing_key: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ):
        if buffer_size < 1:
            raise ValueError("buffer_size must be >= 1")
        self.store = store
        self.send_path = send_path
        self.receive_path = receive_path
        self.source = source
        self.gateway = gateway
        self.buffer_size = buffer_size
        self.signing_key = signing_key
        self._clock = clock
        self._cursor = 0
        self._seen: deque[str] = deque(maxlen=_SEEN_CAPACITY)

    @property
    def direction(self) -> Direction:
        if self.send_path == JobPaths.SIGNALS_INBOUND:
            return Direction.INBOUND
        return Direction.OUTBOUND

    def _read_buffer(self, path: str) -> list[Any]:
        try:
            data = self.store.get_json(path)
        except ParseError as e:
            logger.warning(f"Signal buffer {path} is corrupt, ignoring: {e}")
            return []
        if not isinstance(data, dict) or not isinstance(data.get("queue"), list):
            return []
        return data["queue"]

    def build(self, signal_type: SignalType | str, payload: dict[str, Any]) -> SignalEnvelope:
        """Encode an envelope from this agent without sending it."""
        return encode(
            signal_type,
            payload,
            direction=self.direction,
            source=self.source,
            key=self.signing_key,
            timestamp=now_ms(self._clock),
        )

    def send(self, signal_type: SignalType | str, payload: dict[str, Any]) -> SignalEnvelope:
        """Encode an envelope and append it to the send buffer."""
        envelope = self.build(signal_type, payload)
        queue = self._read_buffer(self.send_path)
        queue.append(envelope.to_dict())
        self.store.put_json(self.send_path, {
            "queue": queue[-self.buffer_size:],
            "last_update": envelope.timestamp,
        })
        logger.debug(
            f"Sent {envelope.type.value} signal to {self.send_path}",
            extra={"event": "signal_sent", "job_id": payload.get("job_id")},
        )
        return envelope

    def receive(self) -> list[SignalEnvelope]:
        """
        Return new envelopes from the receive buffer that pass the gateway.

        Rejected and unparseable envelopes are logged and dropped; they are
        still marked as seen so they are evaluated only once.
        """
        accepted = []
        newest = self._cursor
        for raw in self._read_buffer(self.receive_path):
            try:
                envelope = decode(raw)
            except ParseError as e:
                logger.warning(f"Skipping malformed signal in {self.receive_path}: {e}")
                continue

            if envelope.timestamp < self._cursor or envelope.signal_id in self._seen:
                continue
            self._seen.append(envelope.signal_id)
            newest = max(newest, envelope.timestamp)

            if self.gateway.evaluate(envelope).allowed:
                accepted.append(envelope)

        self._cursor = newest
        return accepted

    def accept(self, envelope: SignalEnvelope, since: Optional[float] = None) -> SignalEnvelope:
        """
        Validate a single envelope obtained outside the ring buffer.

        `since` anchors the replay window (see SignalGateway.evaluate).

        Raises:
            SecurityRejected: If the gateway rejects it
        """
        self.gateway.evaluate(envelope, since=since).raise_for_rejection()
        return envelope


def executor_channel(
    store: BlobStore,
    gateway: SignalGateway,
    source: str = "discburn-executor",
    buffer_size: int = DEFAULT_BUFFER_SIZE,
    signing_key: Optional[str] = None,
    clock: Callable[[], float] = time.time,
) -> SignalChannel:
    """Executor sends on outbound.json and listens on inbound.json."""
    return SignalChannel(
        store,
        send_path=JobPaths.SIGNALS_OUTBOUND,
        receive_path=JobPaths.SIGNALS_INBOUND,
        source=source,
        gateway=gateway,
        buffer_size=buffer_size,
        signing_key=signing_key,
        clock=clock,
    )


def initiator_channel(
    store: BlobStore,
    gateway: SignalGateway,
    source: str = "discburn-cli",
    buffer_size: int = DEFAULT_BUFFER_SIZE,
    signing_key: Optional[str] = None,
    clock: Callable[[], float] = time.time,
) -> SignalChannel:
    """Initiator sends on inbound.json and listens on outbound.json."""
    return SignalChannel(
        store,
        send_path=JobPaths.SIGNALS_INBOUND,
        receive_path=JobPaths.SIGNALS_OUTBOUND,
        source=source,
        gateway=gateway,
        buffer_size=buffer_size,
        signing_key=signing_key,
        clock=clock,
    )


def write_cancel_marker(store: BlobStore, job_id: str, envelope: SignalEnvelope) -> str:
    """Persist an explicit cancel request carrying its signed envelope."""
    path = JobPaths.cancel_marker(job_id)
    store.put_json(path, {
        "job_id": job_id,
        "command": "cancel",
        "timestamp": envelope.timestamp,
        "signal": envelope.to_dict(),
    })
    return path


def read_cancel_marker(store: BlobStore, job_id: str) -> Optional[SignalEnvelope]:
    """
    Load the envelope embedded in a cancel marker, if one exists.

    Raises:
        ParseError: If the marker or its envelope is malformed
    """
    data = store.get_json(JobPaths.cancel_marker(job_id))
    if data is None:
        return None
    if not isinstance(data, dict) or "signal" not in data:
        raise ParseError(f"Cancel marker for {job_id} has no signal")
    return decode(data["signal"])
