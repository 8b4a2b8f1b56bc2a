"""
Signal codec - builds, parses and verifies signal envelopes.

The integrity digest covers a canonical serialization of the payload
(sorted keys, compact separators), so two semantically equal payloads
always produce the same digest regardless of key order. The same
canonical_json() feeds the gateway's content filter.

Digest formats:
- "sha256:<hex>"       plain content digest (detects corruption/tampering
                       by parties that do not bother to re-hash)
- "hmac-sha256:<hex>"  keyed digest when both agents share a signing key
"""

import hashlib
import hmac
import json
import time
from typing import Any, Optional

from discburn.errors import ParseError
from discburn.schemas import Direction, SignalEnvelope, SignalType

SHA256_PREFIX = "sha256:"
HMAC_PREFIX = "hmac-sha256:"


def canonical_json(value: Any) -> str:
    """Canonical text form of a JSON-compatible value."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def compute_digest(payload: Any, key: Optional[str] = None) -> str:
    """
    Digest of the canonical payload.

    Args:
        payload: JSON-compatible payload
        key: Shared signing key; switches to HMAC-SHA256 when set

    Returns:
        Prefixed hex digest
    """
    data = canonical_json(payload).encode("utf-8")
    if key:
        mac = hmac.new(key.encode("utf-8"), data, hashlib.sha256).hexdigest()
        return f"{HMAC_PREFIX}{mac}"
    return f"{SHA256_PREFIX}{hashlib.sha256(data).hexdigest()}"


def encode(
    signal_type: SignalType | str,
    payload: dict[str, Any],
    direction: Direction | str = Direction.OUTBOUND,
    source: Optional[str] = None,
    key: Optional[str] = None,
    timestamp: Optional[int] = None,
) -> SignalEnvelope:
    """
    Build an envelope stamped with the current time.

    The payload is copied through its canonical form, so later changes
    to the caller's dict cannot alter the envelope.
    """
    if not isinstance(payload, dict):
        raise TypeError(f"Signal payload must be a dict, got {type(payload).__name__}")
    frozen_payload = json.loads(canonical_json(payload))
    return SignalEnvelope(
        type=SignalType(signal_type),
        direction=Direction(direction),
        timestamp=timestamp if timestamp is not None else int(time.time() * 1000),
        payload=frozen_payload,
        checksum=compute_digest(frozen_payload, key),
        source=source,
    )


def verify(envelope: SignalEnvelope, key: Optional[str] = None) -> bool:
    """
    Recompute the payload digest and compare.

    With a key, only a matching HMAC digest is accepted; a plain sha256
    digest would let anyone who can write to the relay forge signals.
    """
    if key and not envelope.checksum.startswith(HMAC_PREFIX):
        return False
    expected = compute_digest(envelope.payload, key)
    return hmac.compare_digest(expected, envelope.checksum)


def decode(data: Any) -> SignalEnvelope:
    """Parse an envelope from its wire mapping (or JSON bytes/str)."""
    if isinstance(data, (bytes, str)):
        try:
            data = json.loads(data)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ParseError(f"Signal envelope is not valid JSON: {e}")
    return SignalEnvelope.from_dict(data)
