"""
Unit tests for handler outcomes and redelivery.
"""
import pytest

from telemetry_hub.infrastructure.messaging.consumer import (
    BackboneMessage,
    HandlerOutcome,
    OutcomeStatus,
    RedeliveryPolicy,
    run_handler,
)


@pytest.fixture
def message():
    return BackboneMessage.from_entry(
        "test.single",
        0,
        "1700000000000-0",
        {"key": "k1", "value": '{"n": 1}', "headers": "{}", "mid": "m-1"},
    )


class TestBackboneMessage:
    """Test decoding of stream entries."""

    def test_from_entry(self, message):
        assert message.value == {"n": 1}
        assert message.key == "k1"
        assert message.message_id == "m-1"
        assert message.offset == "1700000000000-0"
        assert message.timestamp.year == 2023

    def test_empty_key_is_none(self):
        message = BackboneMessage.from_entry("t", 0, "1-0", {"key": "", "value": "1"})
        assert message.key is None
        assert message.value == 1


class TestRunHandler:
    """Test outcome reporting under a redelivery policy."""

    @pytest.mark.asyncio
    async def test_success(self, message):
        async def handler(msg):
            return None

        outcome = await run_handler(handler, message, RedeliveryPolicy())

        assert outcome.ok
        assert outcome.attempts == 1

    @pytest.mark.asyncio
    async def test_single_attempt_failure(self, message):
        async def handler(msg):
            raise ValueError("bad payload")

        outcome = await run_handler(handler, message, RedeliveryPolicy())

        assert outcome.status == OutcomeStatus.FAILED
        assert isinstance(outcome.error, ValueError)

    @pytest.mark.asyncio
    async def test_redelivered_until_success(self, message):
        calls = []

        async def handler(msg):
            calls.append(msg.offset)
            if len(calls) < 3:
                raise RuntimeError("transient")

        outcome = await run_handler(handler, message, RedeliveryPolicy(max_attempts=3, backoff=0.0))

        assert outcome.ok
        assert outcome.attempts == 3
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_attempt_budget_exhausted(self, message):
        calls = []

        async def handler(msg):
            calls.append(1)
            raise RuntimeError("still broken")

        outcome = await run_handler(handler, message, RedeliveryPolicy(max_attempts=2, backoff=0.0))

        assert not outcome.ok
        assert outcome.attempts == 2
        assert len(calls) == 2


class TestPolicy:
    """Test backoff delays."""

    def test_delay_grows_and_caps(self):
        policy = RedeliveryPolicy(max_attempts=5, backoff=0.5, max_backoff=1.5)
        assert [policy.delay(a) for a in (1, 2, 3)] == [0.5, 1.0, 1.5]

    def test_outcome_helpers(self):
        assert HandlerOutcome.success().ok
        assert not HandlerOutcome.failure(RuntimeError()).ok
