"""
Signal security gateway.

Every inbound envelope passes through SignalGateway.evaluate() before any
other component sees it. The relay store can be read and written by
untrusted parties, so the gateway compensates at the application layer.

Checks, in order (first failure wins):
1. source      - declared source must be on the allow-list
2. freshness   - envelope must be younger than max_signal_age (replay window)
3. rate_limit  - at most rate_limit_per_minute envelopes per rolling window
4. content     - canonical payload must not match a blocked pattern
5. integrity   - checksum must verify

The gateway never raises: it returns a GatewayDecision and logs it.
It holds no business state beyond its own rate window, and one instance
belongs to one agent (no module-level state).
"""

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from discburn.codec import canonical_json, verify
from discburn.errors import ConfigError, SecurityRejected
from discburn.schemas import SignalEnvelope

logger = logging.getLogger(__name__)

RATE_WINDOW_SECONDS = 60.0

DEFAULT_ALLOWED_SOURCES = ("discburn-cli", "discburn-executor")

DEFAULT_BLOCKED_PATTERNS = (
    # code injection markers
    r"<\s*script",
    r"javascript\s*:",
    r"\beval\s*\(",
    r"\bexec\s*\(",
    r"__import__",
    r"\$\(",
    r"`",
    r"\brm\s+-rf\b",
    # alternate transport markers
    r"file://",
    r"ftp://",
    r"wss?://",
    r"data:text/html",
)


@dataclass
class SecurityPolicy:
    """
    Mutable gateway configuration.

    Attributes:
        active: When False every envelope is allowed (logged as such)
        allowed_sources: Known agent identities
        max_signal_age: Replay window in seconds
        rate_limit_per_minute: Envelopes accepted per rolling window
        blocked_patterns: Regular expressions matched case-insensitively
            against the canonical payload text
        signing_key: Shared key; when set only HMAC digests verify
    """
    active: bool = True
    allowed_sources: list[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_SOURCES))
    max_signal_age: float = 30.0
    rate_limit_per_minute: int = 60
    blocked_patterns: list[str] = field(default_factory=lambda: list(DEFAULT_BLOCKED_PATTERNS))
    signing_key: Optional[str] = None

    def __post_init__(self):
        if self.max_signal_age <= 0:
            raise ConfigError("security.max_signal_age must be positive")
        if self.rate_limit_per_minute < 1:
            raise ConfigError("security.rate_limit_per_minute must be >= 1")
        self._compiled_key: tuple = ()
        self._compiled: list[re.Pattern] = []
        # Fail at construction on bad patterns.
        _ = self.compiled_patterns

    @property
    def compiled_patterns(self) -> list[re.Pattern]:
        """Blocked patterns, recompiled whenever the list changes."""
        key = tuple(self.blocked_patterns)
        if key != self._compiled_key:
            try:
                self._compiled = [re.compile(p, re.IGNORECASE) for p in key]
            except re.error as e:
                raise ConfigError(f"Invalid blocked pattern: {e}")
            self._compiled_key = key
        return self._compiled

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "SecurityPolicy":
        data = data or {}
        known = {
            "active", "allowed_sources", "max_signal_age",
            "rate_limit_per_minute", "blocked_patterns", "signing_key",
        }
        unknown = set(data) - known
        if unknown:
            raise ConfigError(f"Unknown security settings: {', '.join(sorted(unknown))}")
        return cls(**data)

    def to_dict(self) -> dict[str, Any]:
        return {
            "active": self.active,
            "allowed_sources": list(self.allowed_sources),
            "max_signal_age": self.max_signal_age,
            "rate_limit_per_minute": self.rate_limit_per_minute,
            "blocked_patterns": list(self.blocked_patterns),
        }


@dataclass
class RateWindow:
    """Rolling rate-limit counter."""
    count: int = 0
    reset_at: float = 0.0


@dataclass(frozen=True)
class GatewayDecision:
    """Outcome of one gateway evaluation."""
    allowed: bool
    reason: str
    check: Optional[str] = None

    def raise_for_rejection(self) -> None:
        """Raise SecurityRejected if this decision is a rejection."""
        if not self.allowed:
            raise SecurityRejected(self.reason, check=self.check)


class SignalGateway:
    """Stateful policy gate for inbound envelopes."""

    def __init__(self, policy: Optional[SecurityPolicy] = None, clock: Callable[[], float] = time.time):
        self.policy = policy or SecurityPolicy()
        self._clock = clock
        self._window = RateWindow(count=0, reset_at=clock() + RATE_WINDOW_SECONDS)

    @property
    def rate_window(self) -> RateWindow:
        """Current window, rolled over if it has elapsed."""
        self._roll_window(self._clock())
        return self._window

    def _roll_window(self, now: float) -> None:
        if now >= self._window.reset_at:
            self._window = RateWindow(count=0, reset_at=now + RATE_WINDOW_SECONDS)

    def evaluate(self, envelope: SignalEnvelope, since: Optional[float] = None) -> GatewayDecision:
        """
        Run all checks against `envelope` and log the decision.

        Args:
            envelope: Envelope to check
            since: Anchor for the replay window, in seconds. Durable requests
                such as cancel markers are judged against the moment their
                job was picked up instead of the current time.
        """
        try:
            decision = self._evaluate(envelope, since)
        except Exception as e:
            # Hostile input must never crash the caller.
            decision = GatewayDecision(False, f"evaluation error: {e!r}", "internal")

        extra = {
            "event": "signal_allowed" if decision.allowed else "signal_rejected",
            "check": decision.check,
            "metadata": {
                "type": getattr(getattr(envelope, "type", None), "value", None),
                "source": getattr(envelope, "declared_source", None),
                "timestamp": getattr(envelope, "timestamp", None),
            },
        }
        if decision.allowed:
            logger.debug(f"Signal allowed: {decision.reason}", extra=extra)
        else:
            logger.warning(f"Signal rejected: {decision.reason}", extra=extra)
        return decision

    def _evaluate(self, envelope: SignalEnvelope, since: Optional[float]) -> GatewayDecision:
        policy = self.policy
        if not policy.active:
            return GatewayDecision(True, "policy inactive")

        # 1. source allow-list
        source = envelope.declared_source
        if not source:
            return GatewayDecision(False, "missing source", "source")
        if source not in policy.allowed_sources:
            return GatewayDecision(False, f"unknown source: {source}", "source")

        # 2. freshness / replay window
        now = self._clock()
        issued = envelope.timestamp / 1000.0
        anchor = now if since is None else since
        if anchor - issued > policy.max_signal_age:
            return GatewayDecision(False, "too old", "freshness")
        if issued - now > policy.max_signal_age:
            return GatewayDecision(False, "timestamp in the future", "freshness")

        # 3. rate limit
        self._roll_window(now)
        if self._window.count >= policy.rate_limit_per_minute:
            return GatewayDecision(False, "rate limit exceeded", "rate_limit")
        self._window.count += 1

        # 4. content patterns
        text = canonical_json(envelope.payload)
        for pattern in policy.compiled_patterns:
            if pattern.search(text):
                return GatewayDecision(False, f"blocked pattern: {pattern.pattern}", "content")

        # 5. integrity
        if not verify(envelope, policy.signing_key):
            return GatewayDecision(False, "checksum mismatch", "integrity")

        return GatewayDecision(True, "ok")
