"""Shared test doubles for the engine and transport tests."""

import asyncio
from typing import Callable, List

from obd_monitor.config import EngineTimings
from obd_monitor.engine import SessionEngine, SessionState
from obd_monitor.transport import ELM327Transport, LineReceived, TransportState


def fast_timings(**overrides) -> EngineTimings:
    """Millisecond-scale timings so state machine tests run quickly."""
    values = dict(
        init_start_delay=0.001,
        reset_delay=0.001,
        init_step_delay=0.001,
        init_finish_delay=0.005,
        settle_delay=0.01,
        stopped_settle_delay=0.15,
        timeout_cooldown=0.01,
        command_timeout=0.2,
        resume_delay=0.01,
        diagnostic_idle_delay=0.01,
        diagnostic_busy_delay=0.05,
        diagnostic_timeout=0.4,
    )
    values.update(overrides)
    return EngineTimings(**values)


class FakeTransport(ELM327Transport):
    """Records sent commands; tests drive state changes and lines by hand."""

    name = "fake"

    def __init__(self):
        super().__init__()
        self.sent: List[str] = []
        self.connect_calls = 0
        self.disconnect_calls = 0

    def connect(self) -> None:
        self.connect_calls += 1
        self._state = TransportState.CONNECTING

    def disconnect(self) -> None:
        self.disconnect_calls += 1
        self._state = TransportState.DISCONNECTED

    def send(self, command: str) -> None:
        self.sent.append(command)

    def report(self, state: TransportState, reason: str = None) -> None:
        self._set_state(state, reason)

    def feed(self, *lines: str) -> None:
        for line in lines:
            self._emit(LineReceived(line))

    async def _open(self) -> None:
        pass

    async def _read_loop(self) -> None:
        pass

    async def _close(self) -> None:
        pass

    def _write(self, data: bytes) -> None:
        pass


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll predicate until true or fail after timeout."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.002)


async def settle(seconds: float = 0.02) -> None:
    """Let queued transport events and short timers run."""
    await asyncio.sleep(seconds)


async def start_polling(engine: SessionEngine, transport: FakeTransport) -> None:
    """Connect, finish the handshake, and wait for the first RPM request."""
    engine.connect(transport)
    transport.report(TransportState.CONNECTED)
    await wait_until(lambda: engine.state == SessionState.POLLING and transport.sent[-1:] == ["010C"])
