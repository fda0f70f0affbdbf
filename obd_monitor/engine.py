"""
Session Engine - adapter lifecycle and polling state machine

Owns one transport at a time, runs the ELM327 initialization handshake,
polls the parameter catalog round-robin, and interleaves one-shot DTC
operations (read, clear, freeze frame) without losing poll position.

Usage:
    async with SessionEngine() as engine:
        engine.connect(WiFiTransport("192.168.0.10", 35000))
        unsubscribe = engine.subscribe(lambda snap: print(snap.parameters))

        result = await engine.scan_codes()
        print([d.code for d in result.dtcs])

All public methods return immediately and must be called from the event
loop thread. Transport events are consumed serially by one task;
deferred actions run on the same loop and are tagged with the command
generation (and the session epoch) so stale ones do nothing.
"""

import asyncio
import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from .config import EngineTimings
from .demo import DemoTransport
from .dtc import (
    DTC,
    FREEZE_FRAME_PIDS,
    FreezeFrame,
    freeze_frame_request,
    is_clear_acknowledged,
    parse_dtc_response,
    parse_freeze_frame,
)
from .errors import (
    DecodeError,
    NotConnectedError,
    OBDError,
    OperationInProgressError,
    ProtocolTimeoutError,
    TransportError,
    VehicleRejectedError,
)
from .parameters import CATALOG, ParameterSample, compact_hex, decode_any, initial_samples
from .transport import (
    ELM327Transport,
    LineReceived,
    StateChanged,
    TransportEvent,
    TransportState,
)

logger = logging.getLogger(__name__)

# Reset, echo off, linefeeds off, spaces off, headers off, auto protocol
INIT_COMMANDS = ("ATZ", "ATE0", "ATL0", "ATS0", "ATH0", "ATSP0")

READ_DTCS_COMMAND = "03"
CLEAR_DTCS_COMMAND = "04"

NO_RESPONSE_MESSAGE = "No response from vehicle. Check connection."
CLEAR_TIMEOUT_MESSAGE = "Clear command timed out. Try again."
REJECTED_MESSAGE = "Vehicle rejected the request. Try again."


class SessionState(Enum):
    """Engine lifecycle states."""
    IDLE = "idle"
    CONNECTING = "connecting"
    INITIALIZING = "initializing"
    POLLING = "polling"
    DIAGNOSTIC_PENDING = "diagnostic_pending"


class DiagnosticKind(Enum):
    """One-shot operations that interrupt polling."""
    SCAN = "scan"
    CLEAR = "clear"
    FREEZE_FRAME = "freeze_frame"


@dataclass(frozen=True)
class DiagnosticResult:
    """Outcome of a scan, clear, or freeze-frame read."""
    kind: DiagnosticKind
    ok: bool
    dtcs: Tuple[DTC, ...] = ()
    error: Optional[OBDError] = None

    @property
    def message(self) -> Optional[str]:
        return str(self.error) if self.error else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "ok": self.ok,
            "dtcs": [d.to_dict() for d in self.dtcs],
            "error": self.message,
        }


@dataclass(frozen=True)
class EngineSnapshot:
    """Read-only view of the engine published to observers."""
    state: SessionState
    transport_state: TransportState
    parameters: Tuple[ParameterSample, ...]
    dtcs: Tuple[DTC, ...]
    last_error: Optional[str] = None
    last_scan: Optional[datetime] = None
    pending_operation: Optional[DiagnosticKind] = None
    last_result: Optional[DiagnosticResult] = None
    demo: bool = False
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def connected(self) -> bool:
        return self.transport_state == TransportState.CONNECTED

    @property
    def scanning(self) -> bool:
        return self.pending_operation == DiagnosticKind.SCAN

    @property
    def clearing(self) -> bool:
        return self.pending_operation == DiagnosticKind.CLEAR

    def parameter(self, parameter_id: str) -> Optional[ParameterSample]:
        for sample in self.parameters:
            if sample.parameter_id == parameter_id:
                return sample
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "state": self.state.value,
            "transport_state": self.transport_state.value,
            "connected": self.connected,
            "demo": self.demo,
            "scanning": self.scanning,
            "clearing": self.clearing,
            "last_error": self.last_error,
            "last_scan": self.last_scan.isoformat() if self.last_scan else None,
            "parameters": [s.to_dict() for s in self.parameters],
            "dtcs": [d.to_dict() for d in self.dtcs],
            "last_result": self.last_result.to_dict() if self.last_result else None,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class _Operation:
    kind: DiagnosticKind
    op_id: int
    future: asyncio.Future
    command: Optional[str] = None
    sent: bool = False
    # freeze frame only
    pids: List[int] = field(default_factory=list)
    frame: Optional[FreezeFrame] = None


Observer = Callable[[EngineSnapshot], None]


class SessionEngine:
    """
    ELM327 session state machine.

    Provides:
    - Initialization handshake on connect
    - Round-robin parameter polling with timeout recovery
    - DTC read / clear with priority over polling
    - Freeze-frame retrieval after a scan that found codes
    - Snapshot publication to subscribers
    """

    def __init__(
        self,
        timings: Optional[EngineTimings] = None,
        transport_factory: Optional[Callable[[], ELM327Transport]] = None,
        fetch_freeze_frame: bool = True,
    ):
        self.timings = timings or EngineTimings()
        self.fetch_freeze_frame = fetch_freeze_frame
        self._transport_factory = transport_factory

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue] = None
        self._consumer: Optional[asyncio.Task] = None
        self._timers: Set[asyncio.TimerHandle] = set()
        self._observers: List[Observer] = []

        self._transport: Optional[ELM327Transport] = None
        self._transport_state = TransportState.DISCONNECTED
        self._state = SessionState.IDLE
        self._active = False
        self._epoch = 0

        self._generation = 0
        self._awaiting = False
        self._advance_generation: Optional[int] = None
        self._poll_index = 0
        self._last_command: Optional[str] = None

        self._samples: Dict[str, ParameterSample] = initial_samples()
        self._dtcs: List[DTC] = []
        self._last_scan: Optional[datetime] = None
        self._last_error: Optional[str] = None
        self._last_result: Optional[DiagnosticResult] = None

        self._operation: Optional[_Operation] = None
        self._op_counter = 0

    # -------------------------------------------------------------------------
    # Read-only state
    # -------------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def transport(self) -> Optional[ELM327Transport]:
        return self._transport

    @property
    def transport_state(self) -> TransportState:
        return self._transport_state

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def poll_index(self) -> int:
        """Catalog index of the most recent parameter request."""
        return self._poll_index

    @property
    def awaiting_response(self) -> bool:
        return self._awaiting

    @property
    def parameters(self) -> Tuple[ParameterSample, ...]:
        return tuple(self._samples.values())

    @property
    def dtcs(self) -> Tuple[DTC, ...]:
        # Deep copy: freeze frames hold a mutable values dict
        return tuple(copy.deepcopy(d) for d in self._dtcs)

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    @property
    def demo(self) -> bool:
        return isinstance(self._transport, DemoTransport)

    def snapshot(self) -> EngineSnapshot:
        return EngineSnapshot(
            state=self._state,
            transport_state=self._transport_state,
            parameters=self.parameters,
            dtcs=self.dtcs,
            last_error=self._last_error,
            last_scan=self._last_scan,
            pending_operation=self._operation.kind if self._operation else None,
            last_result=self._last_result,
            demo=self.demo,
        )

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """
        Call observer with a fresh snapshot on every change.

        Returns:
            Function that removes the observer
        """
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    # -------------------------------------------------------------------------
    # Context Manager Support
    # -------------------------------------------------------------------------

    async def __aenter__(self) -> "SessionEngine":
        self._ensure_started()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Disconnect and stop the event consumer."""
        transport = self._transport
        self.disconnect()
        if transport is not None:
            await transport.wait_closed()
        for handle in list(self._timers):
            handle.cancel()
        self._timers.clear()
        if self._consumer is not None:
            self._consumer.cancel()
            await asyncio.gather(self._consumer, return_exceptions=True)
            self._consumer = None

    # -------------------------------------------------------------------------
    # Connection Management
    # -------------------------------------------------------------------------

    def connect(self, transport: Optional[ELM327Transport] = None) -> None:
        """
        Start a session on transport (or one built by the factory).

        Any existing session is torn down first.
        """
        self._ensure_started()
        if transport is None:
            if self._transport_factory is None:
                raise ValueError("No transport given and no transport_factory configured")
            transport = self._transport_factory()

        self._teardown()
        self._last_error = None
        self._last_result = None
        self._transport = transport
        self._active = True
        self._state = SessionState.CONNECTING
        logger.info(f"Connecting via {transport.name}")

        epoch = self._epoch
        transport.attach(lambda event: self._post(transport, epoch, event))
        transport.connect()
        self._publish()

    def start_demo(self) -> None:
        """Replace any real connection with the simulated adapter."""
        self.connect(DemoTransport())

    def disconnect(self) -> None:
        """Tear down the session from any state. Safe to call repeatedly."""
        if self._transport is not None:
            logger.info("Disconnecting")
        self._teardown()
        self._state = SessionState.IDLE
        self._publish()

    # -------------------------------------------------------------------------
    # Diagnostic Operations
    # -------------------------------------------------------------------------

    def scan_codes(self) -> asyncio.Future:
        """Read stored DTCs (mode 03). Resolves to a DiagnosticResult."""
        return self._request_operation(DiagnosticKind.SCAN, READ_DTCS_COMMAND)

    def clear_codes(self) -> asyncio.Future:
        """Clear stored DTCs (mode 04). Resolves to a DiagnosticResult."""
        return self._request_operation(DiagnosticKind.CLEAR, CLEAR_DTCS_COMMAND)

    def _request_operation(self, kind: DiagnosticKind, command: str) -> asyncio.Future:
        future = self._get_loop().create_future()

        if not self._active or self._state not in (SessionState.POLLING, SessionState.DIAGNOSTIC_PENDING):
            error = NotConnectedError("Not connected to vehicle")
        elif self._operation is not None:
            error = OperationInProgressError(f"{self._operation.kind.value} already in progress")
        else:
            error = None
        if error is not None:
            logger.warning(f"Rejecting {kind.value}: {error}")
            future.set_result(DiagnosticResult(kind, ok=False, error=error))
            return future

        # Let an outstanding poll finish before taking the channel
        if self._awaiting:
            delay = self.timings.diagnostic_busy_delay
        else:
            delay = self.timings.diagnostic_idle_delay

        self._op_counter += 1
        op = _Operation(kind=kind, op_id=self._op_counter, future=future, command=command)
        self._operation = op
        self._state = SessionState.DIAGNOSTIC_PENDING
        logger.info(f"{kind.value} requested, sending {command} in {delay:.1f}s")

        self._schedule(delay, self._send_operation, op.op_id)
        self._schedule(delay + self.timings.diagnostic_timeout, self._on_operation_timeout, op.op_id)
        self._publish()
        return future

    def _send_operation(self, op_id: int) -> None:
        op = self._operation
        if op is None or op.op_id != op_id or op.sent:
            return
        op.sent = True
        self._send_command(op.command)

    def _on_operation_timeout(self, op_id: int) -> None:
        op = self._operation
        if op is None or op.op_id != op_id:
            return
        logger.warning(f"{op.kind.value} timed out")
        self._operation_timed_out(op)

    def _operation_timed_out(self, op: _Operation) -> None:
        if op.kind == DiagnosticKind.FREEZE_FRAME:
            self._finish_freeze_frame(op)
        elif op.kind == DiagnosticKind.CLEAR:
            self._fail_operation(ProtocolTimeoutError(CLEAR_TIMEOUT_MESSAGE))
        else:
            self._fail_operation(ProtocolTimeoutError(NO_RESPONSE_MESSAGE))

    def _sent_operation(self) -> Optional[_Operation]:
        """The diagnostic operation whose command is on the wire, if any."""
        op = self._operation
        return op if op is not None and op.sent else None

    def _complete_scan(self, dtcs: List[DTC]) -> None:
        self._dtcs = dtcs
        self._last_scan = datetime.now()
        if dtcs:
            logger.info(f"Found {len(dtcs)} DTC(s): {', '.join(d.code for d in dtcs)}")
        else:
            logger.info("No stored DTCs")
        result = DiagnosticResult(DiagnosticKind.SCAN, ok=True, dtcs=self.dtcs)
        if dtcs and self.fetch_freeze_frame:
            self._finish_operation(result, resume=False)
            self._start_freeze_frame()
        else:
            self._finish_operation(result)

    def _complete_clear(self) -> None:
        logger.info("DTCs cleared")
        self._dtcs = []
        self._finish_operation(DiagnosticResult(DiagnosticKind.CLEAR, ok=True))

    def _fail_operation(self, error: OBDError) -> None:
        op = self._operation
        if op is None:
            return
        logger.warning(f"{op.kind.value} failed: {error}")
        self._last_error = str(error)
        self._finish_operation(DiagnosticResult(op.kind, ok=False, error=error))

    def _finish_operation(self, result: DiagnosticResult, resume: bool = True) -> None:
        op, self._operation = self._operation, None
        self._awaiting = False
        self._last_result = result
        if op is not None and not op.future.done():
            op.future.set_result(result)
        if resume and self._active:
            self._state = SessionState.POLLING
            self._schedule_advance(self.timings.resume_delay)
        self._publish()

    # -------------------------------------------------------------------------
    # Freeze Frame
    # -------------------------------------------------------------------------

    def _start_freeze_frame(self) -> None:
        self._op_counter += 1
        op = _Operation(
            kind=DiagnosticKind.FREEZE_FRAME,
            op_id=self._op_counter,
            future=self._get_loop().create_future(),
            pids=list(FREEZE_FRAME_PIDS),
            frame=FreezeFrame(dtc=self._dtcs[0].code),
        )
        self._operation = op
        self._state = SessionState.DIAGNOSTIC_PENDING
        delay = self.timings.settle_delay
        self._schedule(delay, self._next_freeze_frame_request, op.op_id, self._generation)
        self._schedule(delay + self.timings.diagnostic_timeout, self._on_operation_timeout, op.op_id)
        self._publish()

    def _next_freeze_frame_request(self, op_id: int, generation: int) -> None:
        op = self._operation
        if op is None or op.op_id != op_id or generation != self._generation:
            return
        if not op.pids:
            self._finish_freeze_frame(op)
            return
        op.command = freeze_frame_request(op.pids.pop(0))
        op.sent = True
        self._send_command(op.command)

    def _freeze_frame_step(self, op: _Operation, response: Optional[str] = None) -> None:
        self._awaiting = False
        if response is not None:
            try:
                parse_freeze_frame(response, frame=op.frame)
            except DecodeError as e:
                logger.warning(f"Bad freeze frame response {response!r}: {e}")
        self._schedule(self.timings.settle_delay, self._next_freeze_frame_request, op.op_id, self._generation)

    def _finish_freeze_frame(self, op: _Operation) -> None:
        frame = op.frame
        if frame is not None and frame.has_data:
            owner = next((d for d in self._dtcs if d.code == frame.dtc), None)
            if owner is None and self._dtcs:
                owner = self._dtcs[0]
            if owner is not None:
                owner.freeze_frame = frame
                logger.info(f"Freeze frame for {owner.code}: {frame.values}")
        self._finish_operation(
            DiagnosticResult(DiagnosticKind.FREEZE_FRAME, ok=True, dtcs=self.dtcs)
        )

    # -------------------------------------------------------------------------
    # Event intake
    # -------------------------------------------------------------------------

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def _ensure_started(self) -> None:
        loop = self._get_loop()
        if self._consumer is None or self._consumer.done():
            self._queue = asyncio.Queue()
            self._consumer = loop.create_task(self._consume())

    def _post(self, transport: ELM327Transport, epoch: int, event: TransportEvent) -> None:
        # May be called from a transport callback thread
        self._loop.call_soon_threadsafe(self._queue.put_nowait, (transport, epoch, event))

    async def _consume(self) -> None:
        while True:
            transport, epoch, event = await self._queue.get()
            if transport is not self._transport or epoch != self._epoch:
                continue
            try:
                self._dispatch(event)
            except Exception:
                logger.exception(f"Error handling {event!r}")

    def _dispatch(self, event: TransportEvent) -> None:
        if isinstance(event, StateChanged):
            self._on_transport_state(event.state, event.reason)
        elif isinstance(event, LineReceived):
            if self._active:
                self._handle_line(event.line)

    def _on_transport_state(self, state: TransportState, reason: Optional[str]) -> None:
        self._transport_state = state
        if state == TransportState.CONNECTED:
            if self._active and self._state == SessionState.CONNECTING:
                self._start_initialization()
        elif state in (TransportState.FAILED, TransportState.DISCONNECTED):
            if self._active:
                self._halt(state, reason or f"Transport {state.value}")
        self._publish()

    def _halt(self, state: TransportState, reason: str) -> None:
        """Transport went away on its own: stop and wait for a new connect()."""
        logger.error(f"Connection lost: {reason}")
        self._teardown(error=TransportError(reason))
        self._transport_state = state
        self._last_error = reason
        self._state = SessionState.IDLE

    def _teardown(self, error: Optional[OBDError] = None) -> None:
        self._active = False
        self._epoch += 1

        op, self._operation = self._operation, None
        if op is not None and not op.future.done():
            op.future.set_result(DiagnosticResult(
                op.kind, ok=False, error=error or NotConnectedError("Disconnected")
            ))

        transport, self._transport = self._transport, None
        if transport is not None:
            transport.attach(None)
            transport.disconnect()

        self._transport_state = TransportState.DISCONNECTED
        self._awaiting = False
        self._advance_generation = None
        self._poll_index = 0
        self._last_command = None
        self._samples = initial_samples()

    # -------------------------------------------------------------------------
    # Timers
    # -------------------------------------------------------------------------

    def _schedule(self, delay: float, callback: Callable[..., None], *args: Any) -> None:
        handle = None

        def fire() -> None:
            self._timers.discard(handle)
            # Timers from an earlier session (or after disconnect) are inert
            if not self._active or epoch != self._epoch:
                return
            try:
                callback(*args)
            except Exception:
                logger.exception(f"Error in scheduled {callback.__name__}")

        epoch = self._epoch
        handle = self._get_loop().call_later(delay, fire)
        self._timers.add(handle)

    # -------------------------------------------------------------------------
    # Initialization and polling
    # -------------------------------------------------------------------------

    def _start_initialization(self) -> None:
        logger.info("Adapter connected, initializing")
        self._state = SessionState.INITIALIZING
        t = self.timings
        at = t.init_start_delay
        for i, command in enumerate(INIT_COMMANDS):
            self._schedule(at, self._send_init_command, command)
            at += t.reset_delay if i == 0 else t.init_step_delay
        # at now overshoots the last command by one step
        self._schedule(at - t.init_step_delay + t.init_finish_delay, self._start_polling)

    def _send_init_command(self, command: str) -> None:
        self._last_command = command
        self._transport.send(command)

    def _start_polling(self) -> None:
        logger.info("Initialization complete, polling started")
        self._state = SessionState.POLLING
        self._publish()
        self._send_poll(0)

    def _send_poll(self, index: int) -> None:
        self._poll_index = index
        self._send_command(CATALOG[index].request_code)

    def _send_command(self, command: str) -> None:
        self._generation += 1
        self._awaiting = True
        self._last_command = command
        self._transport.send(command)
        self._schedule(self.timings.command_timeout, self._on_command_timeout, self._generation)

    def _schedule_advance(self, delay: float) -> None:
        self._advance_generation = self._generation
        self._schedule(delay, self._advance_and_send, self._generation)

    def _advance_and_send(self, generation: int) -> None:
        if generation != self._generation:
            return  # a newer command already went out
        if self._operation is not None or self._state != SessionState.POLLING:
            return
        self._send_poll((self._poll_index + 1) % len(CATALOG))

    def _on_command_timeout(self, generation: int) -> None:
        if generation != self._generation:
            return
        if not self._awaiting and self._advance_generation == generation:
            return  # answered; the follow-up send is already scheduled
        self._awaiting = False
        logger.warning(f"Timeout waiting for response to {self._last_command}")

        op = self._sent_operation()
        if op is not None:
            self._operation_timed_out(op)
        elif self._state == SessionState.POLLING:
            self._schedule_advance(self.timings.timeout_cooldown)

    # -------------------------------------------------------------------------
    # Response classification
    # -------------------------------------------------------------------------

    def _is_echo(self, compact: str) -> bool:
        if compact.startswith("01") and len(compact) <= 4:
            return True
        return self._last_command is not None and compact == compact_hex(self._last_command)

    @staticmethod
    def _is_ack(upper: str) -> bool:
        return "AT" in upper or upper == "OK" or "ELM" in upper

    def _handle_line(self, line: str) -> None:
        line = line.strip()
        if not line or line == ">":
            return
        if self._state == SessionState.INITIALIZING:
            logger.debug(f"Init response: {line}")
            return

        upper = line.upper()
        compact = compact_hex(line)
        op = self._sent_operation()

        if "SEARCHING" in upper:
            return

        if "STOPPED" in upper:
            self._awaiting = False
            self._schedule_advance(self.timings.stopped_settle_delay)
            return

        if "NO DATA" in upper:
            if op is not None:
                if op.kind == DiagnosticKind.FREEZE_FRAME:
                    self._freeze_frame_step(op)
                elif op.kind == DiagnosticKind.CLEAR:
                    self._complete_clear()
                else:
                    self._complete_scan([])
                return
            # Parameter not supported by this vehicle
            self._awaiting = False
            self._schedule_advance(self.timings.settle_delay)
            return

        if self._is_echo(compact):
            return

        if self._is_ack(upper):
            self._awaiting = False
            return

        if compact.startswith("7F"):
            if op is not None and op.kind == DiagnosticKind.FREEZE_FRAME:
                self._freeze_frame_step(op)
            elif op is not None and compact.startswith("7F" + op.command[:2]):
                self._fail_operation(VehicleRejectedError(REJECTED_MESSAGE, compact))
            else:
                logger.warning(f"Negative response to {self._last_command}: {line}")
                self._awaiting = False
                self._schedule_advance(self.timings.settle_delay)
            return

        if compact.startswith("43"):
            if op is not None and op.kind == DiagnosticKind.SCAN:
                try:
                    dtcs = parse_dtc_response(compact)
                except DecodeError as e:
                    logger.warning(f"Bad DTC response {line!r}: {e}")
                    dtcs = []
                self._complete_scan(dtcs)
            else:
                logger.debug(f"Ignoring stale DTC response: {line}")
            return

        if compact.startswith("44"):
            if op is not None and op.kind == DiagnosticKind.CLEAR and is_clear_acknowledged(compact):
                self._complete_clear()
            else:
                logger.debug(f"Ignoring stale clear response: {line}")
            return

        if compact.startswith("42") and op is not None and op.kind == DiagnosticKind.FREEZE_FRAME:
            self._freeze_frame_step(op, compact)
            return

        self._handle_parameter_response(line, compact)

    def _handle_parameter_response(self, line: str, compact: str) -> None:
        self._awaiting = False
        try:
            decoded = decode_any(compact)
        except DecodeError as e:
            logger.warning(f"Decode failure for {line!r}: {e}")
            decoded = None

        if decoded is not None:
            spec, value = decoded
            self._samples[spec.id] = ParameterSample(spec.id, value, spec.unit, datetime.now())
            self._publish()
        elif compact.startswith("41"):
            logger.warning(f"Unrecognized parameter response: {line!r}")
        else:
            logger.debug(f"Unclassified response: {line!r}")

        self._schedule_advance(self.timings.settle_delay)

    # -------------------------------------------------------------------------
    # Publication
    # -------------------------------------------------------------------------

    def _publish(self) -> None:
        if not self._observers:
            return
        snapshot = self.snapshot()
        for observer in list(self._observers):
            try:
                observer(snapshot)
            except Exception:
                logger.exception("Observer raised")
