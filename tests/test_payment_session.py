import asyncio
import time
from unittest.mock import MagicMock, patch

import pytest

from storefront.exceptions import (
    ConfigurationError,
    InvalidAmountError,
    PaymentCancelledError,
    SessionExpiredError,
)
from storefront.models.khqr_model import SessionState, VerificationOutcome
from storefront.services.payment_session import PaymentSession, PaymentSessionController

from conftest import ScriptedVerifier


async def run_inline(func, *args):
    """Stand-in for asyncio.to_thread so verifier calls are counted on the loop"""
    return func(*args)


def make_controller(encoder, verifier, **kwargs):
    options = dict(ttl_seconds=100, tick_interval=0.01, poll_interval=0.01, initial_poll_delay=0)
    options.update(kwargs)
    return PaymentSessionController(encoder, verifier, 24.5, bill_reference="ORD-1001", **options)


# State machine -----------------------------------------------------------

def test_verification_wins_over_expiry_in_the_same_tick(encoder):
    on_verified = MagicMock()
    on_expired = MagicMock()
    payload = encoder.encode(24.5, "USD", "ORD-1001")
    session = PaymentSession(payload, ttl_seconds=3, on_verified=on_verified, on_expired=on_expired)
    session.tick()
    session.tick()
    assert session.seconds_remaining == 1

    # Both land in the final tick; the verification is applied first
    assert session.apply_outcome(payload.content_hash, VerificationOutcome.verified("tx-last-second"))
    assert session.tick() is False

    assert session.state is SessionState.VERIFIED
    assert session.seconds_remaining == 1
    on_verified.assert_called_once_with("tx-last-second")
    on_expired.assert_not_called()


def test_expires_exactly_at_zero(encoder):
    on_expired = MagicMock()
    session = PaymentSession(encoder.encode(5, "USD"), ttl_seconds=5, on_expired=on_expired)

    for _ in range(4):
        assert session.tick() is False
    assert session.state is SessionState.AWAITING_PAYMENT
    assert session.seconds_remaining == 1

    assert session.tick() is True
    assert session.state is SessionState.EXPIRED
    assert session.seconds_remaining == 0
    on_expired.assert_called_once_with()

    assert session.tick() is False
    assert session.seconds_remaining == 0


def test_late_verification_after_expiry_is_discarded(encoder):
    on_verified = MagicMock()
    payload = encoder.encode(5, "USD")
    session = PaymentSession(payload, ttl_seconds=1, on_verified=on_verified)
    session.tick()

    assert session.apply_outcome(payload.content_hash, VerificationOutcome.verified("tx-late")) is False
    assert session.state is SessionState.EXPIRED
    assert session.transaction_id is None
    on_verified.assert_not_called()


def test_transient_errors_do_not_change_state(encoder):
    on_verified = MagicMock()
    payload = encoder.encode(5, "USD")
    session = PaymentSession(payload, on_verified=on_verified)

    for outcome in (VerificationOutcome.error("timeout"), VerificationOutcome.error("502"),
                    VerificationOutcome.pending()):
        assert session.apply_outcome(payload.content_hash, outcome) is False
        assert session.state is SessionState.AWAITING_PAYMENT

    assert session.apply_outcome(payload.content_hash, VerificationOutcome.verified("tx1"))
    assert session.transaction_id == "tx1"
    on_verified.assert_called_once_with("tx1")


def test_outcome_for_another_payload_is_ignored(encoder):
    old = encoder.encode(5, "USD")
    new = encoder.encode(5, "USD")
    session = PaymentSession(new)

    assert session.apply_outcome(old.content_hash, VerificationOutcome.verified("tx-old")) is False
    assert session.state is SessionState.AWAITING_PAYMENT


def test_closed_session_ignores_ticks_and_outcomes(encoder):
    payload = encoder.encode(5, "USD")
    session = PaymentSession(payload, ttl_seconds=2)
    session.close()

    assert session.tick() is False
    assert session.apply_outcome(payload.content_hash, VerificationOutcome.verified("tx")) is False
    assert session.seconds_remaining == 2
    assert session.state is SessionState.AWAITING_PAYMENT


# Controller --------------------------------------------------------------

def test_controller_reaches_verified_through_transient_errors(encoder):
    verifier = ScriptedVerifier([
        VerificationOutcome.error("timeout"),
        VerificationOutcome.error("502"),
        VerificationOutcome.verified("tx1"),
    ])
    verified = []

    async def scenario():
        controller = make_controller(encoder, verifier, on_verified=verified.append)
        await controller.start()
        session = await asyncio.wait_for(controller.wait(), timeout=5)
        remaining = session.seconds_remaining
        await asyncio.sleep(0.1)
        return session, remaining

    session, remaining = asyncio.run(scenario())

    assert session.state is SessionState.VERIFIED
    assert session.transaction_id == "tx1"
    assert verified == ["tx1"]
    assert len(verifier.calls) == 3
    # Countdown stopped with the verification
    assert session.seconds_remaining == remaining


def test_controller_expires_and_stops_polling(encoder):
    verifier = ScriptedVerifier()
    calls_at_expiry = []

    async def scenario():
        controller = make_controller(
            encoder, verifier, ttl_seconds=5, tick_interval=0.02, poll_interval=0.03,
            on_expired=lambda: calls_at_expiry.append(len(verifier.calls)),
        )
        await controller.start()
        with pytest.raises(SessionExpiredError):
            await asyncio.wait_for(controller.wait(), timeout=5)
        await asyncio.sleep(0.15)
        return controller.session

    with patch.object(asyncio, "to_thread", run_inline):
        session = asyncio.run(scenario())

    assert session.state is SessionState.EXPIRED
    assert session.seconds_remaining == 0
    assert calls_at_expiry and calls_at_expiry[0] >= 1
    assert len(verifier.calls) == calls_at_expiry[0]


def test_regeneration_starts_a_fresh_isolated_session(encoder):
    verifier = ScriptedVerifier()

    async def scenario():
        controller = make_controller(encoder, verifier, ttl_seconds=300, tick_interval=0.001, poll_interval=0.05)
        first = await controller.start()
        with pytest.raises(SessionExpiredError):
            await asyncio.wait_for(controller.wait(), timeout=10)

        second = await controller.regenerate()
        fresh_remaining = second.seconds_remaining
        late = second.apply_outcome(first.payload.content_hash, VerificationOutcome.verified("tx-old"))
        await controller.cancel()
        return first, second, fresh_remaining, late

    with patch.object(asyncio, "to_thread", run_inline):
        first, second, fresh_remaining, late = asyncio.run(scenario())

    assert first.state is SessionState.EXPIRED
    assert second.payload.content_hash != first.payload.content_hash
    assert second.session_id != first.session_id
    assert fresh_remaining == 300
    assert late is False
    assert second.state is SessionState.AWAITING_PAYMENT
    assert first.state is SessionState.EXPIRED


def test_configuration_error_aborts_session(encoder):
    verifier = ScriptedVerifier([ConfigurationError("Missing Bakong API configuration")])

    async def scenario():
        controller = make_controller(encoder, verifier)
        await controller.start()
        with pytest.raises(ConfigurationError):
            await asyncio.wait_for(controller.wait(), timeout=5)
        remaining = controller.session.seconds_remaining
        await asyncio.sleep(0.1)
        return controller.session, remaining

    with patch.object(asyncio, "to_thread", run_inline):
        session, remaining = asyncio.run(scenario())

    assert session.closed
    assert session.state is SessionState.AWAITING_PAYMENT
    assert session.seconds_remaining == remaining
    assert len(verifier.calls) == 1


def test_cancel_stops_both_activities(encoder):
    verifier = ScriptedVerifier()

    async def scenario():
        controller = make_controller(encoder, verifier, poll_interval=0.02)
        await controller.start()
        await asyncio.sleep(0.05)
        await controller.cancel()
        with pytest.raises(PaymentCancelledError):
            await controller.wait()
        remaining = controller.session.seconds_remaining
        calls = len(verifier.calls)
        await asyncio.sleep(0.1)
        return controller.session, remaining, calls

    with patch.object(asyncio, "to_thread", run_inline):
        session, remaining, calls = asyncio.run(scenario())

    assert session.closed
    assert session.seconds_remaining == remaining
    assert len(verifier.calls) == calls


def test_encoder_errors_propagate_from_start(encoder):
    async def scenario():
        controller = PaymentSessionController(encoder, ScriptedVerifier(), 0)
        with pytest.raises(InvalidAmountError):
            await controller.start()
        return controller

    controller = asyncio.run(scenario())
    assert controller.session is None


class DelayedVerifier(ScriptedVerifier):
    """Scripted verifier whose calls block for a while, like a slow Bakong response"""

    def __init__(self, delays, outcomes=None, default=None):
        super().__init__(outcomes, default)
        self.delays = list(delays)
        self.started_at = []

    def verify(self, content_hash):
        self.started_at.append(time.monotonic())
        if self.delays:
            time.sleep(self.delays.pop(0))
        return super().verify(content_hash)


def test_verification_in_the_final_tick_beats_expiry(encoder):
    """A verify call that returns during the last second wins over the countdown"""
    verifier = ScriptedVerifier(default=VerificationOutcome.verified("tx-last"))
    expired = MagicMock()

    async def scenario():
        controller = make_controller(
            encoder, verifier, ttl_seconds=1, tick_interval=0.1, initial_poll_delay=0.1, on_expired=expired,
        )
        await controller.start()
        return await asyncio.wait_for(controller.wait(), timeout=5)

    session = asyncio.run(scenario())

    assert session.state is SessionState.VERIFIED
    assert session.transaction_id == "tx-last"
    assert len(verifier.calls) == 1
    expired.assert_not_called()


def test_slow_verification_started_before_expiry_still_wins(encoder):
    verifier = DelayedVerifier([0.15], default=VerificationOutcome.verified("tx-slow"))

    async def scenario():
        controller = make_controller(encoder, verifier, ttl_seconds=2, tick_interval=0.1, initial_poll_delay=0.1)
        await controller.start()
        return await asyncio.wait_for(controller.wait(), timeout=5)

    session = asyncio.run(scenario())

    assert session.state is SessionState.VERIFIED
    assert session.transaction_id == "tx-slow"


def test_slow_call_does_not_trigger_catch_up_polls(encoder):
    """After a slow response the next poll still waits a full interval"""
    verifier = DelayedVerifier([0.3])

    async def scenario():
        controller = make_controller(encoder, verifier, poll_interval=0.05)
        await controller.start()
        await asyncio.sleep(0.6)
        await controller.cancel()

    asyncio.run(scenario())

    gaps = [later - earlier for earlier, later in zip(verifier.started_at, verifier.started_at[1:])]
    assert len(gaps) >= 3
    assert gaps[0] >= 0.29
    assert min(gaps[1:]) >= 0.04
