"""Console session lifecycle: wake, handshake, teardown and reconnection.

Every lifecycle request (connect, power on, power off, transport loss) is
posted to an inbox and processed one at a time by a single worker task, so the
session state field only ever changes from that worker or from the synchronous
transport-loss callback.
"""

from __future__ import annotations

import asyncio
import logging
import random
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

from .errors import (
    AuthenticationRejected,
    ChannelNotOpen,
    CommandTimeout,
    PowerOnTimeout,
    SessionLost,
    TransportUnreachable,
    XboxTvError,
)
from .events import EventName

if TYPE_CHECKING:
    from .config import ConsoleConfig, PowerConfig, ResilienceConfig
    from .core import ConsoleTransport

LOGGER = logging.getLogger(__name__)

Notifier = Callable[[EventName, Any], None]


class SessionState(str, Enum):
    """Lifecycle state of a console session."""

    DISCONNECTED = "disconnected"
    """No connection. Initial state, and terminal once the session is closed."""

    WAKING = "waking"
    """Wake packets in flight; the console is assumed to be off."""

    CONNECTING = "connecting"
    """Discovery and handshake in progress."""

    AUTHENTICATING = "authenticating"
    """Handshake carrying account credentials in progress."""

    CONNECTED = "connected"
    """Encrypted session established; channels are usable."""

    RECONNECTING = "reconnecting"
    """Connection dropped; re-establishing it with backoff."""


class ReconnectReason(str, Enum):
    """Why the connection was lost."""

    CONNECTION_LOST = "connection_lost"
    """The transport failed unexpectedly."""

    KEEPALIVE_TIMEOUT = "keepalive_timeout"
    """The console stopped answering keepalives."""

    CONSOLE_DISCONNECT = "console_disconnect"
    """The console closed the session itself."""


def next_reconnect_delay(
    attempt: int,
    previous_delay: float,
    *,
    initial: float,
    maximum: float,
    jitter_ratio: float = 0.0,
    rand: Callable[[], float] = random.random,
) -> float:
    """Return the delay before reconnect ``attempt``.

    The delay doubles from ``initial`` with each attempt and is capped at
    ``maximum``. Jitter only ever lengthens the delay, and the result is never
    shorter than ``previous_delay``, so consecutive delays do not decrease.

    Args:
        attempt: 1-based attempt number.
        previous_delay: Delay used before the previous attempt (0 for the first).
        initial: Delay before the first attempt.
        maximum: Upper bound for any delay.
        jitter_ratio: Fraction of the base delay added at random (0 to 1).
        rand: Source of uniform values in ``[0, 1)``.

    Raises:
        ValueError: If ``attempt`` is smaller than 1.
    """

    if attempt < 1:
        raise ValueError("attempt must be >= 1")

    initial = max(0.0, initial)
    maximum = max(initial, maximum)
    delay = min(maximum, initial * (2.0 ** min(attempt - 1, 32)))

    jitter_ratio = max(0.0, min(1.0, jitter_ratio))
    if jitter_ratio > 0.0:
        delay *= 1.0 + jitter_ratio * rand()

    return min(maximum, max(previous_delay, delay))


def _reason_for(exc: Optional[BaseException]) -> ReconnectReason:
    if exc is None:
        return ReconnectReason.CONSOLE_DISCONNECT
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return ReconnectReason.KEEPALIVE_TIMEOUT
    return ReconnectReason.CONNECTION_LOST


class ConnectionCoordinator:
    """Owns the lifecycle state machine of one console session.

    Key responsibilities:
    - Serialize lifecycle requests through a single worker task
    - Wake the console and poll until it answers
    - Run the handshake, entering ``authenticating`` when credentials exist
    - Reconnect after transport loss with backoff, then give up for good
    """

    def __init__(
        self,
        *,
        transport: ConsoleTransport,
        console: ConsoleConfig,
        power: PowerConfig,
        resilience: ResilienceConfig,
        notify: Notifier,
        send_power_off: Callable[[], Awaitable[None]],
        rand: Callable[[], float] = random.random,
    ) -> None:
        self._transport = transport
        self._console = console
        self._power = power
        self._resilience = resilience
        self._notify = notify
        self._send_power_off = send_power_off
        self._rand = rand

        self._state = SessionState.DISCONNECTED
        self._inbox: asyncio.Queue[tuple[str, Optional[asyncio.Future[None]]]] = (
            asyncio.Queue()
        )
        self._worker: Optional[asyncio.Task[None]] = None
        self._current: Optional[asyncio.Future[None]] = None
        self._closing = False
        self._terminated = False
        self._reconnect_attempts = 0
        self._last_reason: Optional[ReconnectReason] = None
        self._handshake_task: Optional[asyncio.Future[None]] = None
        self._handshake_closed: Optional[str] = None

        self._connected_callbacks: list[Callable[[], None]] = []
        self._lost_callbacks: list[Callable[[str], None]] = []

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------
    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is SessionState.CONNECTED and not self._closing

    @property
    def terminated(self) -> bool:
        """True once the session can no longer be used."""
        return self._terminated

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def last_reconnect_reason(self) -> Optional[ReconnectReason]:
        return self._last_reason

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def register_connected_callback(self, callback: Callable[[], None]) -> None:
        """Register a callback invoked each time ``connected`` is reached."""
        self._connected_callbacks.append(callback)

    def register_lost_callback(self, callback: Callable[[str], None]) -> None:
        """Register a callback invoked whenever ``connected`` is left."""
        self._lost_callbacks.append(callback)

    async def connect(self) -> None:
        """Connect to a console that is already powered on.

        Raises:
            TransportUnreachable: If the console does not answer.
            AuthenticationRejected: If the console refuses the credentials.
            SessionLost: If the session is closed.
        """
        await self._request("connect")

    async def power_on(self) -> None:
        """Wake the console and connect to it.

        Raises:
            PowerOnTimeout: If the console never answers after waking.
            TransportUnreachable: If wake packets cannot be sent.
            AuthenticationRejected: If the console refuses the credentials.
            SessionLost: If the session is closed.
        """
        await self._request("power_on")

    async def power_off(self) -> None:
        """Ask the console to shut down and drop the session.

        Raises:
            ChannelNotOpen: If the session is not connected.
            SessionLost: If the session is closed.
        """
        await self._request("power_off")

    def handle_transport_closed(self, exc: Optional[BaseException] = None) -> None:
        """React to the transport closing without being asked to."""

        if self._closing or self._terminated:
            return
        if self._state is not SessionState.CONNECTED:
            handshake = self._handshake_task
            if handshake is not None and not handshake.done():
                LOGGER.warning(
                    "Transport closed during handshake in state %s", self._state.value
                )
                detail = str(exc) if exc is not None else ""
                self._handshake_closed = detail or "closed"
                handshake.cancel()
                return
            LOGGER.debug(
                "Ignoring transport closure in state %s", self._state.value
            )
            return

        reason = _reason_for(exc)
        self._last_reason = reason
        detail = f"Connection to console lost ({reason.value})"
        if exc is not None:
            detail = f"{detail}: {exc}"
        LOGGER.warning("%s", detail)
        self._notify(EventName.ERROR, detail)

        self._leave_connected(SessionState.RECONNECTING, detail)
        self._ensure_worker()
        self._inbox.put_nowait(("reconnect", None))

    async def shutdown(self) -> None:
        """Stop the worker, fail queued requests and close the transport."""

        if self._closing:
            return
        self._closing = True
        was_active = self._state is not SessionState.DISCONNECTED

        worker = self._worker
        current = self._current
        self._worker = None
        if worker is not None:
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass

        self._terminated = True
        self._settle(current, SessionLost("Session shut down"))
        self._current = None
        self._drain_inbox("Session shut down")

        self._leave_connected(SessionState.DISCONNECTED, "Session shut down")
        await self._close_transport()
        if was_active:
            self._notify(EventName.DISCONNECTED, "Session shut down")

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------
    async def _request(self, action: str) -> None:
        if self._closing or self._terminated:
            raise SessionLost("Session is closed")

        self._ensure_worker()
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._inbox.put_nowait((action, future))
        await asyncio.shield(future)

    def _ensure_worker(self) -> None:
        if self._worker is not None and not self._worker.done():
            return
        self._worker = asyncio.create_task(self._worker_loop())

    async def _worker_loop(self) -> None:
        handlers = {
            "connect": self._handle_connect,
            "power_on": self._handle_power_on,
            "power_off": self._handle_power_off,
            "reconnect": self._handle_reconnect,
        }
        while True:
            action, future = await self._inbox.get()
            if future is not None and future.done():
                continue
            if self._terminated:
                self._settle(future, SessionLost("Session is closed"))
                continue

            self._current = future
            try:
                await handlers[action]()
            except XboxTvError as exc:
                if future is None:
                    LOGGER.warning("Lifecycle step %s failed: %s", action, exc)
                self._settle(future, exc)
            except Exception as exc:
                LOGGER.exception("Lifecycle step %s crashed", action)
                self._settle(future, TransportUnreachable(str(exc)))
            else:
                self._settle(future, None)
            finally:
                self._current = None

    # ------------------------------------------------------------------
    # Lifecycle steps
    # ------------------------------------------------------------------
    async def _handle_connect(self) -> None:
        if self._state is SessionState.CONNECTED:
            return
        try:
            self._set_state(SessionState.CONNECTING)
            await self._establish()
        except BaseException:
            self._reset_after_failure()
            raise

    async def _handle_power_on(self) -> None:
        if self._state is SessionState.CONNECTED:
            LOGGER.debug("Power on requested while connected; nothing to do")
            return

        self._notify(EventName.MESSAGE, "Sending power on request")
        try:
            self._set_state(SessionState.WAKING)
            await self._wake()
            self._set_state(SessionState.CONNECTING)
            await self._poll_until_reachable()
            await self._handshake()
        except BaseException:
            self._reset_after_failure()
            raise

    async def _handle_power_off(self) -> None:
        if self._state is not SessionState.CONNECTED:
            raise ChannelNotOpen("Power off requires a connected session")

        self._notify(EventName.MESSAGE, "Sending power off request")
        try:
            await asyncio.wait_for(
                self._send_power_off(),
                timeout=self._resilience.connect_timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise CommandTimeout("Power off request was not sent in time") from None

        reason = "Console powered off"
        self._leave_connected(SessionState.DISCONNECTED, reason)
        await self._close_transport()
        self._notify(EventName.DISCONNECTED, reason)

    async def _handle_reconnect(self) -> None:
        if self._state is not SessionState.RECONNECTING:
            return

        max_attempts = self._resilience.reconnect_max_attempts
        delay = 0.0
        for attempt in range(1, max_attempts + 1):
            self._reconnect_attempts = attempt
            delay = next_reconnect_delay(
                attempt,
                delay,
                initial=self._resilience.reconnect_initial_seconds,
                maximum=self._resilience.reconnect_max_seconds,
                jitter_ratio=self._resilience.reconnect_jitter_ratio,
                rand=self._rand,
            )
            LOGGER.info(
                "Reconnect attempt %d/%d in %.1fs", attempt, max_attempts, delay
            )
            self._notify(
                EventName.DEBUG,
                f"Reconnect attempt {attempt}/{max_attempts} in {delay:.1f}s",
            )
            await asyncio.sleep(delay)
            await self._close_transport()

            try:
                self._set_state(SessionState.CONNECTING)
                await self._establish()
            except AuthenticationRejected:
                return
            except XboxTvError as exc:
                self._set_state(SessionState.RECONNECTING)
                LOGGER.warning("Reconnect attempt %d failed: %s", attempt, exc)
                self._notify(
                    EventName.ERROR, f"Reconnect attempt {attempt} failed: {exc}"
                )
                continue

            LOGGER.info("Reconnected after %d attempt(s)", attempt)
            return

        await self._terminate(
            f"Gave up reconnecting after {max_attempts} attempt(s)"
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _establish(self) -> None:
        timeout = self._resilience.connect_timeout_seconds
        if not await self._probe(timeout):
            raise TransportUnreachable(
                f"Console at {self._console.host} is not reachable"
            )
        await self._handshake()

    async def _wake(self) -> None:
        attempts = max(1, self._power.wake_attempts)
        for attempt in range(1, attempts + 1):
            try:
                await asyncio.wait_for(
                    self._transport.send_wake(self._console.live_id),
                    timeout=self._resilience.connect_timeout_seconds,
                )
            except (OSError, asyncio.TimeoutError) as exc:
                raise TransportUnreachable(
                    f"Could not send wake packet: {exc or 'timed out'}"
                ) from exc
            self._notify(
                EventName.DEBUG, f"Sent power on packet ({attempt}/{attempts})"
            )
            if attempt < attempts:
                await asyncio.sleep(self._power.wake_interval_seconds)

    async def _poll_until_reachable(self) -> None:
        loop = asyncio.get_running_loop()
        budget = self._power.power_on_timeout_seconds
        deadline = loop.time() + budget
        while True:
            remaining = deadline - loop.time()
            probe_timeout = max(0.01, min(self._power.probe_timeout_seconds, remaining))
            if await self._probe(probe_timeout):
                return
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise PowerOnTimeout(
                    f"Console did not respond within {budget:.1f}s of waking"
                )
            await asyncio.sleep(min(self._power.probe_interval_seconds, remaining))

    async def _probe(self, timeout: float) -> bool:
        try:
            return bool(
                await asyncio.wait_for(self._transport.probe(timeout), timeout=timeout)
            )
        except asyncio.TimeoutError:
            return False
        except OSError as exc:
            LOGGER.debug("Discovery probe failed: %s", exc)
            return False

    async def _handshake(self) -> None:
        credentials = self._console.credentials
        if credentials is not None:
            self._set_state(SessionState.AUTHENTICATING)

        timeout = self._resilience.connect_timeout_seconds
        self._handshake_closed = None
        self._handshake_task = asyncio.ensure_future(
            asyncio.wait_for(
                self._transport.handshake(credentials, timeout), timeout=timeout
            )
        )
        try:
            await self._handshake_task
        except asyncio.CancelledError:
            # Only a closure reported by the transport turns into a failure;
            # cancellation of the worker itself propagates.
            closed = self._handshake_closed
            if closed is None:
                raise
            await self._close_transport()
            raise TransportUnreachable(
                f"Transport closed during handshake ({closed})"
            ) from None
        except asyncio.TimeoutError:
            await self._close_transport()
            raise TransportUnreachable("Handshake timed out") from None
        except AuthenticationRejected as exc:
            await self._terminate(f"Authentication rejected: {exc}")
            raise
        except OSError as exc:
            await self._close_transport()
            raise TransportUnreachable(f"Handshake failed: {exc}") from exc
        finally:
            self._handshake_task = None
            self._handshake_closed = None

        self._reconnect_attempts = 0
        self._set_state(SessionState.CONNECTED)
        for callback in self._connected_callbacks:
            try:
                callback()
            except Exception:
                LOGGER.exception("Connected callback failed")

    async def _terminate(self, reason: str) -> None:
        LOGGER.error("Session closed: %s", reason)
        self._terminated = True
        self._leave_connected(SessionState.DISCONNECTED, reason)
        await self._close_transport()
        self._drain_inbox(reason)
        self._notify(EventName.ERROR, reason)
        self._notify(EventName.DISCONNECTED, reason)

    def _reset_after_failure(self) -> None:
        if self._state is not SessionState.CONNECTED and not self._terminated:
            self._set_state(SessionState.DISCONNECTED)

    def _leave_connected(self, next_state: SessionState, reason: str) -> None:
        was_connected = self._state is SessionState.CONNECTED
        self._set_state(next_state)
        if not was_connected:
            return
        for callback in self._lost_callbacks:
            try:
                callback(reason)
            except Exception:
                LOGGER.exception("Connection lost callback failed")

    def _set_state(self, state: SessionState) -> None:
        if state is self._state:
            return
        previous = self._state
        self._state = state
        LOGGER.debug("Session state %s -> %s", previous.value, state.value)
        self._notify(EventName.DEBUG, f"State changed: {previous.value} -> {state.value}")

    def _drain_inbox(self, reason: str) -> None:
        while True:
            try:
                _, future = self._inbox.get_nowait()
            except asyncio.QueueEmpty:
                return
            self._settle(future, SessionLost(reason))

    async def _close_transport(self) -> None:
        try:
            await self._transport.close()
        except Exception:
            LOGGER.debug("Transport close failed", exc_info=True)

    @staticmethod
    def _settle(
        future: Optional[asyncio.Future[None]], error: Optional[XboxTvError]
    ) -> None:
        if future is None or future.done():
            return
        if error is None:
            future.set_result(None)
        else:
            future.set_exception(error)
