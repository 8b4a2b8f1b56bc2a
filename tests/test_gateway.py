"""Tests for the signal security gateway."""

import dataclasses

import pytest

from discburn.codec import encode
from discburn.errors import ConfigError, SecurityRejected
from discburn.gateway import SecurityPolicy, SignalGateway


def make_envelope(clock, payload=None, source="discburn-cli", age=0.0, key=None):
    return encode(
        "command",
        payload if payload is not None else {"action": "cancel", "job_id": "burn-1"},
        direction="inbound",
        source=source,
        key=key,
        timestamp=int((clock() - age) * 1000),
    )


class TestSourceCheck:

    def test_known_source_allowed(self, clock):
        gateway = SignalGateway(clock=clock)
        decision = gateway.evaluate(make_envelope(clock))
        assert decision.allowed
        assert decision.reason == "ok"

    def test_unknown_source(self, clock):
        gateway = SignalGateway(clock=clock)
        decision = gateway.evaluate(make_envelope(clock, source="mallory"))
        assert not decision.allowed
        assert decision.reason == "unknown source: mallory"
        assert decision.check == "source"

    def test_missing_source(self, clock):
        gateway = SignalGateway(clock=clock)
        decision = gateway.evaluate(make_envelope(clock, source=None))
        assert decision.reason == "missing source"

    def test_payload_source_fallback(self, clock):
        gateway = SignalGateway(clock=clock)
        envelope = make_envelope(clock, payload={"action": "status", "source": "discburn-executor"}, source=None)
        assert gateway.evaluate(envelope).allowed

    def test_empty_allow_list_rejects_everything(self, clock):
        gateway = SignalGateway(SecurityPolicy(allowed_sources=[]), clock=clock)
        assert not gateway.evaluate(make_envelope(clock)).allowed


class TestFreshness:

    def test_too_old(self, clock):
        gateway = SignalGateway(SecurityPolicy(max_signal_age=30), clock=clock)
        decision = gateway.evaluate(make_envelope(clock, age=31))
        assert not decision.allowed
        assert decision.reason == "too old"

    def test_within_window(self, clock):
        gateway = SignalGateway(SecurityPolicy(max_signal_age=30), clock=clock)
        assert gateway.evaluate(make_envelope(clock, age=29)).allowed

    def test_future_timestamp(self, clock):
        gateway = SignalGateway(SecurityPolicy(max_signal_age=30), clock=clock)
        decision = gateway.evaluate(make_envelope(clock, age=-60))
        assert decision.reason == "timestamp in the future"

    def test_window_anchored_at_since(self, clock):
        gateway = SignalGateway(SecurityPolicy(max_signal_age=30), clock=clock)
        picked_up = clock()
        clock.advance(5)
        envelope = make_envelope(clock)
        clock.advance(60)

        assert gateway.evaluate(envelope).reason == "too old"
        assert gateway.evaluate(envelope, since=picked_up).allowed

    def test_anchored_window_rejects_envelopes_older_than_anchor(self, clock):
        gateway = SignalGateway(SecurityPolicy(max_signal_age=30), clock=clock)
        decision = gateway.evaluate(make_envelope(clock, age=31), since=clock())
        assert decision.reason == "too old"
        assert decision.check == "freshness"


class TestRateLimit:

    def test_rejects_exactly_the_next_envelope(self, clock):
        gateway = SignalGateway(SecurityPolicy(rate_limit_per_minute=5), clock=clock)
        decisions = [gateway.evaluate(make_envelope(clock)) for _ in range(6)]

        assert all(d.allowed for d in decisions[:5])
        assert not decisions[5].allowed
        assert decisions[5].reason == "rate limit exceeded"

    def test_window_resets(self, clock):
        gateway = SignalGateway(SecurityPolicy(rate_limit_per_minute=2), clock=clock)
        for _ in range(2):
            assert gateway.evaluate(make_envelope(clock)).allowed
        assert not gateway.evaluate(make_envelope(clock)).allowed

        clock.advance(61)
        assert gateway.rate_window.count == 0
        assert gateway.evaluate(make_envelope(clock)).allowed


class TestContentPatterns:
    """Injection markers are rejected even from trusted, intact envelopes."""

    @pytest.mark.parametrize("text", [
        "<script>alert(1)</script>",
        "javascript:void(0)",
        "eval(payload)",
        "exec(code)",
        "__import__('os')",
        "$(whoami)",
        "`id`",
        "rm -rf /",
        "file:///etc/passwd",
        "ftp://example.org/x",
        "ws://example.org/socket",
        "wss://example.org/socket",
        "data:text/html,hi",
    ])
    def test_blocked(self, clock, text):
        gateway = SignalGateway(clock=clock)
        decision = gateway.evaluate(make_envelope(clock, payload={"action": "burn", "params": {"note": text}}))
        assert not decision.allowed
        assert decision.reason.startswith("blocked pattern: ")
        assert decision.check == "content"

    def test_plain_paths_allowed(self, clock):
        gateway = SignalGateway(clock=clock)
        envelope = make_envelope(clock, payload={"action": "burn", "params": {"files": ["/data/reports/q3.pdf"]}})
        assert gateway.evaluate(envelope).allowed

    def test_patterns_can_change_at_runtime(self, clock):
        policy = SecurityPolicy()
        gateway = SignalGateway(policy, clock=clock)
        envelope = make_envelope(clock, payload={"action": "burn", "params": {"note": "forbidden"}})
        assert gateway.evaluate(envelope).allowed

        policy.blocked_patterns = policy.blocked_patterns + ["forbidden"]
        assert gateway.evaluate(envelope).reason == "blocked pattern: forbidden"


class TestIntegrity:

    def test_checksum_mismatch(self, clock):
        gateway = SignalGateway(clock=clock)
        envelope = make_envelope(clock)
        tampered = dataclasses.replace(envelope, payload={"action": "cancel", "job_id": "burn-2"})
        decision = gateway.evaluate(tampered)
        assert decision.reason == "checksum mismatch"

    def test_signing_key_required(self, clock):
        gateway = SignalGateway(SecurityPolicy(signing_key="shared"), clock=clock)
        assert not gateway.evaluate(make_envelope(clock)).allowed
        assert gateway.evaluate(make_envelope(clock, key="shared")).allowed


class TestPolicy:

    def test_inactive_policy_allows_everything(self, clock):
        gateway = SignalGateway(SecurityPolicy(active=False), clock=clock)
        decision = gateway.evaluate(make_envelope(clock, source="mallory", age=3600))
        assert decision.allowed
        assert decision.reason == "policy inactive"

    def test_evaluate_never_raises(self, clock):
        gateway = SignalGateway(clock=clock)
        decision = gateway.evaluate(object())
        assert not decision.allowed
        assert decision.reason.startswith("evaluation error")

    def test_raise_for_rejection(self, clock):
        gateway = SignalGateway(clock=clock)
        with pytest.raises(SecurityRejected) as exc_info:
            gateway.evaluate(make_envelope(clock, age=120)).raise_for_rejection()
        assert exc_info.value.reason == "too old"

    def test_rejection_is_logged(self, clock, caplog):
        gateway = SignalGateway(clock=clock)
        with caplog.at_level("WARNING", logger="discburn.gateway"):
            gateway.evaluate(make_envelope(clock, source="mallory"))
        assert "Signal rejected: unknown source: mallory" in caplog.text

    @pytest.mark.parametrize("kwargs", [
        {"max_signal_age": 0},
        {"rate_limit_per_minute": 0},
        {"blocked_patterns": ["("]},
    ])
    def test_invalid_policy(self, kwargs):
        with pytest.raises(ConfigError):
            SecurityPolicy(**kwargs)

    def test_from_dict_rejects_unknown_keys(self):
        with pytest.raises(ConfigError):
            SecurityPolicy.from_dict({"maxAge": 10})

    def test_to_dict_omits_signing_key(self):
        assert "signing_key" not in SecurityPolicy(signing_key="s").to_dict()
