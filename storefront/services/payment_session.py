"""
Lifecycle of a single KHQR payment attempt.

A ``PaymentSession`` is the state machine: it starts awaiting payment and
ends in exactly one of ``verified`` or ``expired``. A
``PaymentSessionController`` drives it with two asyncio tasks, a one-second
countdown and a verification poll loop, and cancels both as soon as the
session reaches a terminal state or is abandoned.
"""

import asyncio
import functools
import logging
import uuid
from typing import Callable, List, Optional

from ..exceptions import ConfigurationError, PaymentCancelledError, SessionExpiredError
from ..models.khqr_model import Currency, KHQRPayload, SessionState, VerificationOutcome
from .khqr_encoder import QR_EXPIRY_SECONDS, AmountLike, KHQREncoder

logger = logging.getLogger(__name__)

TICK_INTERVAL_SECONDS = 1.0
POLL_INTERVAL_SECONDS = 3.0
INITIAL_POLL_DELAY_SECONDS = 2.0

VerifiedCallback = Callable[[str], None]
ExpiredCallback = Callable[[], None]


class PaymentSession:
    """Countdown and settlement state for one KHQR payload"""

    def __init__(self, payload: KHQRPayload, ttl_seconds: int = QR_EXPIRY_SECONDS,
                 on_verified: Optional[VerifiedCallback] = None,
                 on_expired: Optional[ExpiredCallback] = None):
        self.session_id = uuid.uuid4().hex
        self.payload = payload
        self.seconds_remaining = ttl_seconds
        self.state = SessionState.AWAITING_PAYMENT
        self.transaction_id: Optional[str] = None
        self.closed = False
        self._on_verified = on_verified
        self._on_expired = on_expired

    @property
    def is_active(self) -> bool:
        return self.state is SessionState.AWAITING_PAYMENT and not self.closed

    @property
    def is_terminal(self) -> bool:
        return self.state is not SessionState.AWAITING_PAYMENT

    def tick(self) -> bool:
        """Advance the countdown by one second. Returns True if this tick expired the session."""
        if not self.is_active:
            return False

        self.seconds_remaining = max(0, self.seconds_remaining - 1)
        if self.seconds_remaining > 0:
            return False

        self.state = SessionState.EXPIRED
        logger.info(f"Payment session {self.session_id} expired md5={self.payload.content_hash}")
        if self._on_expired:
            self._on_expired()
        return True

    def apply_outcome(self, content_hash: str, outcome: VerificationOutcome) -> bool:
        """
        Apply a verification result. Returns True if it verified the session.

        Results for another payload, or arriving after the session is
        terminal or closed, are discarded.
        """
        if not self.is_active:
            logger.debug(f"Discarding {outcome.status.value} outcome for inactive session {self.session_id}")
            return False
        if content_hash != self.payload.content_hash:
            logger.debug(f"Discarding outcome for stale md5={content_hash} in session {self.session_id}")
            return False
        if not outcome.is_verified:
            return False

        self.state = SessionState.VERIFIED
        self.transaction_id = outcome.transaction_id
        logger.info(f"Payment session {self.session_id} verified, transaction={self.transaction_id}")
        if self._on_verified:
            self._on_verified(self.transaction_id)
        return True

    def close(self) -> None:
        """Abandon the session without a terminal transition"""
        if not self.closed and not self.is_terminal:
            logger.info(f"Payment session {self.session_id} closed while awaiting payment")
        self.closed = True


class PaymentSessionController:
    """Runs the countdown and verification poll for one checkout's payment attempts"""

    def __init__(self, encoder: KHQREncoder, verifier, amount: AmountLike,
                 currency: Currency = Currency.USD, bill_reference: Optional[str] = None,
                 on_verified: Optional[VerifiedCallback] = None,
                 on_expired: Optional[ExpiredCallback] = None,
                 ttl_seconds: int = QR_EXPIRY_SECONDS,
                 tick_interval: float = TICK_INTERVAL_SECONDS,
                 poll_interval: float = POLL_INTERVAL_SECONDS,
                 initial_poll_delay: float = INITIAL_POLL_DELAY_SECONDS):
        self._encoder = encoder
        self._verifier = verifier
        self.amount = amount
        self.currency = currency
        self.bill_reference = bill_reference
        self._on_verified = on_verified
        self._on_expired = on_expired
        self.ttl_seconds = ttl_seconds
        self.tick_interval = tick_interval
        self.poll_interval = poll_interval
        self.initial_poll_delay = initial_poll_delay

        self.session: Optional[PaymentSession] = None
        self.error: Optional[BaseException] = None
        self._tasks: List[asyncio.Task] = []
        self._done: Optional[asyncio.Event] = None
        # Verify call currently running, and when the poll loop next wakes
        self._inflight: Optional[asyncio.Future] = None
        self._poll_idle_until: Optional[float] = None

    async def start(self) -> PaymentSession:
        """
        Encode a fresh payload and start the countdown and poll loop.

        Encoder errors propagate and leave no session running.
        """
        if self.session is not None and self.session.is_active:
            raise RuntimeError("Payment session already running; use regenerate()")

        payload = self._encoder.encode(self.amount, self.currency, self.bill_reference)
        session = PaymentSession(
            payload,
            ttl_seconds=self.ttl_seconds,
            on_verified=self._on_verified,
            on_expired=self._on_expired,
        )
        self.session = session
        self.error = None
        self._done = asyncio.Event()
        self._inflight = None
        self._poll_idle_until = None
        self._tasks = [
            asyncio.create_task(self._countdown(session), name=f"khqr-countdown-{session.session_id}"),
            asyncio.create_task(self._poll(session), name=f"khqr-poll-{session.session_id}"),
        ]
        for task in self._tasks:
            task.add_done_callback(functools.partial(self._task_done, session))

        logger.info(
            f"Started payment session {session.session_id} md5={payload.content_hash} "
            f"ttl={self.ttl_seconds}s"
        )
        return session

    async def regenerate(self) -> PaymentSession:
        """Discard the current payload and timers and start over with a new one"""
        await self._teardown()
        return await self.start()

    async def cancel(self) -> None:
        """Abandon the live session, stopping both background activities"""
        await self._teardown()

    async def wait(self) -> PaymentSession:
        """
        Block until the current session finishes.

        Returns the verified session, or raises SessionExpiredError,
        PaymentCancelledError, or the error that aborted the session.
        """
        if self.session is None or self._done is None:
            raise RuntimeError("Payment session has not been started")

        session = self.session
        await self._done.wait()
        if self.error is not None:
            raise self.error
        if session.state is SessionState.VERIFIED:
            return session
        if session.state is SessionState.EXPIRED:
            raise SessionExpiredError(f"QR code {session.payload.content_hash} has expired")
        raise PaymentCancelledError(f"Payment session {session.session_id} was cancelled")

    # Internal helpers -----------------------------------------------------

    async def _countdown(self, session: PaymentSession) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time()
        while session.is_active:
            deadline += self.tick_interval
            await asyncio.sleep(max(0.0, deadline - loop.time()))
            # Let a verification that landed in this same tick apply first
            await asyncio.sleep(0)
            if session.seconds_remaining <= 1:
                await self._hold_final_tick(session, deadline)
                if not session.is_active:
                    return
            if session.tick():
                self._finish(session)
                return

    async def _hold_final_tick(self, session: PaymentSession, deadline: float) -> None:
        """
        Keep the last second open while a verify call is running or due.

        Waits at most one extra tick; a result that comes back in that
        window is applied by the poll loop before the session can expire.
        """
        loop = asyncio.get_running_loop()
        give_up_at = deadline + self.tick_interval
        while session.is_active and loop.time() < give_up_at:
            pending = self._inflight
            if pending is not None:
                if pending.done():
                    # Result is back; the poll loop still has to apply it
                    await asyncio.sleep(0)
                else:
                    await asyncio.wait({pending}, timeout=max(0.0, give_up_at - loop.time()))
            elif self._poll_idle_until is not None and self._poll_idle_until <= give_up_at:
                await asyncio.sleep(max(0.0, self._poll_idle_until - loop.time()))
                await asyncio.sleep(0)
            else:
                return

    async def _poll(self, session: PaymentSession) -> None:
        loop = asyncio.get_running_loop()
        self._poll_idle_until = loop.time() + self.initial_poll_delay
        await asyncio.sleep(self.initial_poll_delay)
        next_poll = loop.time()
        content_hash = session.payload.content_hash

        while session.is_active:
            self._inflight = asyncio.ensure_future(asyncio.to_thread(self._verifier.verify, content_hash))
            try:
                outcome: VerificationOutcome = await self._inflight
            except ConfigurationError as e:
                self._inflight = None
                logger.error(f"Aborting payment session {session.session_id}: {e}")
                self.error = e
                session.close()
                self._finish(session)
                return

            if outcome.is_error:
                logger.warning(f"Verification error for session {session.session_id}: {outcome.message}")

            verified = session.apply_outcome(content_hash, outcome)
            self._inflight = None
            if verified:
                self._finish(session)
                return

            # A slow call pushes the schedule back instead of queuing catch-up polls
            next_poll += self.poll_interval
            if next_poll < loop.time():
                next_poll = loop.time() + self.poll_interval
            self._poll_idle_until = next_poll
            await asyncio.sleep(max(0.0, next_poll - loop.time()))

    def _finish(self, session: PaymentSession) -> None:
        """Cancel whichever activity is still running and release waiters"""
        if session is not self.session:
            return
        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current and not task.done():
                task.cancel()
        if self._done is not None:
            self._done.set()

    def _task_done(self, session: PaymentSession, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        logger.error(f"Payment session task {task.get_name()} failed: {exc}", exc_info=exc)
        if session is not self.session:
            return
        if self.error is None:
            self.error = exc
        session.close()
        self._finish(session)

    async def _teardown(self) -> None:
        session = self.session
        if session is not None:
            session.close()
        tasks = [task for task in self._tasks if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks = []
        if self._done is not None:
            self._done.set()
