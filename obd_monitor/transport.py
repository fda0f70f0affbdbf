"""
ELM327 Transports

Line-oriented, fire-and-forget links to an ELM327 adapter. A transport
never interprets responses; it reports state changes and complete
logical lines to a single attached sink.

Transport types:
    - WiFi:   TCP to 192.168.0.10:35000 (typical ELM327 WiFi)
    - BLE:    GATT service FFF0, write FFF2, notify FFF1
    - Serial: /dev/ttyUSB0, /dev/rfcomm0 (Linux) or COM port (Windows)
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Union

from .config import ConnectionConfig, ConnectionType
from .errors import TransportError
from .framing import ResponseFramer, split_lines

logger = logging.getLogger(__name__)

READ_SIZE = 1024


class TransportState(Enum):
    """Link state as reported by a transport."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


@dataclass(frozen=True)
class StateChanged:
    state: TransportState
    reason: Optional[str] = None


@dataclass(frozen=True)
class LineReceived:
    line: str


TransportEvent = Union[StateChanged, LineReceived]
EventSink = Callable[[TransportEvent], None]


class ELM327Transport(ABC):
    """
    Abstract base class for adapter transports.

    connect() and disconnect() return immediately; the outcome arrives
    as a StateChanged event. Must be used from a running event loop.
    """

    name = "transport"

    def __init__(self, config: Optional[ConnectionConfig] = None):
        self.config = config or ConnectionConfig()
        self._sink: Optional[EventSink] = None
        self._state = TransportState.DISCONNECTED
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._task: Optional[asyncio.Task] = None
        self._shutdown_task: Optional[asyncio.Task] = None
        self._session = 0
        self._closing = False

    @property
    def state(self) -> TransportState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state == TransportState.CONNECTED

    def attach(self, sink: Optional[EventSink]) -> None:
        """Route events to sink (None detaches)."""
        self._sink = sink

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def connect(self) -> None:
        """Begin connecting. Reports CONNECTED or FAILED."""
        if self._state in (TransportState.CONNECTING, TransportState.CONNECTED):
            return
        self._loop = asyncio.get_running_loop()
        self._session += 1
        self._closing = False
        self._set_state(TransportState.CONNECTING)
        self._task = self._loop.create_task(self._run(self._session))

    def disconnect(self) -> None:
        """
        Tear down the link. Safe to call repeatedly; reports DISCONNECTED.

        The state is DISCONNECTED on return, so connect() may follow
        immediately. The event arrives once resources are released,
        unless a new session has started by then.
        """
        self._closing = True
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
        self._session += 1
        if self._loop is None or self._loop.is_closed():
            self._set_state(TransportState.DISCONNECTED)
            return
        self._state = TransportState.DISCONNECTED
        self._shutdown_task = self._loop.create_task(
            self._shutdown(task, self._shutdown_task, self._session)
        )

    def send(self, command: str) -> None:
        """Send a command followed by CR. Dropped unless connected."""
        if self._state != TransportState.CONNECTED:
            logger.debug(f"{self.name}: dropping {command!r}, not connected")
            return
        logger.debug(f"TX: {command}")
        self._write(f"{command}\r".encode("ascii"))

    async def wait_closed(self) -> None:
        """Wait for a pending disconnect to finish."""
        if self._shutdown_task is not None and not self._shutdown_task.done():
            await asyncio.wait({self._shutdown_task})

    # -------------------------------------------------------------------------
    # Subclass hooks
    # -------------------------------------------------------------------------

    @abstractmethod
    async def _open(self) -> None:
        """Open the link. Raise on failure."""

    @abstractmethod
    async def _read_loop(self) -> None:
        """Deliver lines until the link ends. Return on clean EOF."""

    @abstractmethod
    async def _close(self) -> None:
        """Release resources. Must not raise."""

    @abstractmethod
    def _write(self, data: bytes) -> None:
        pass

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _set_state(self, state: TransportState, reason: Optional[str] = None) -> None:
        self._state = state
        if reason:
            logger.info(f"{self.name}: {state.value} ({reason})")
        else:
            logger.info(f"{self.name}: {state.value}")
        self._emit(StateChanged(state, reason))

    def _emit(self, event: TransportEvent) -> None:
        if self._sink is not None:
            self._sink(event)

    def _emit_lines(self, lines: List[str]) -> None:
        for line in lines:
            logger.debug(f"RX: {line}")
            self._emit(LineReceived(line))

    async def _run(self, session: int) -> None:
        # The previous session must release its resources before we open ours
        if self._shutdown_task is not None and not self._shutdown_task.done():
            await asyncio.wait({self._shutdown_task})
        try:
            await asyncio.wait_for(self._open(), timeout=self.config.timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            reason = str(e) or type(e).__name__
            logger.error(f"{self.name} connection failed: {reason}")
            await self._close()
            if session == self._session and not self._closing:
                self._set_state(TransportState.FAILED, reason)
            return

        self._set_state(TransportState.CONNECTED)

        failure = None
        try:
            await self._read_loop()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            failure = str(e) or type(e).__name__
            logger.error(f"{self.name} link error: {failure}")

        await self._close()
        if session != self._session or self._closing:
            return
        if failure:
            self._set_state(TransportState.FAILED, failure)
        else:
            self._set_state(TransportState.DISCONNECTED, "Connection closed by adapter")

    async def _shutdown(self, task: Optional[asyncio.Task],
                        previous: Optional[asyncio.Task], session: int) -> None:
        # Waiting must not cancel an earlier shutdown still in progress
        pending = {t for t in (task, previous) if t is not None and not t.done()}
        if pending:
            await asyncio.wait(pending)
        await self._close()
        if session == self._session:
            self._set_state(TransportState.DISCONNECTED)


class StreamTransport(ELM327Transport):
    """Transport over an asyncio stream pair."""

    def __init__(self, config: Optional[ConnectionConfig] = None):
        super().__init__(config)
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None

    def _write(self, data: bytes) -> None:
        if self._writer is not None:
            self._writer.write(data)

    async def _read_loop(self) -> None:
        while True:
            chunk = await self._reader.read(READ_SIZE)
            if not chunk:
                return
            self._emit_lines(self._lines(chunk))

    def _lines(self, chunk: bytes) -> List[str]:
        # One read is one blob; the prompt is not part of any line
        return split_lines(chunk.decode("ascii", errors="ignore").replace(">", "\n"))

    async def _close(self) -> None:
        writer, self._writer = self._writer, None
        self._reader = None
        if writer is None:
            return
        try:
            writer.close()
            await writer.wait_closed()
        except (OSError, RuntimeError) as e:
            logger.debug(f"{self.name}: error while closing: {e}")


class WiFiTransport(StreamTransport):
    """TCP connection to a WiFi ELM327. Each read blob is split into lines."""

    name = "wifi"

    def __init__(self, host: Optional[str] = None, port: Optional[int] = None,
                 config: Optional[ConnectionConfig] = None):
        config = config or ConnectionConfig(connection_type=ConnectionType.WIFI)
        super().__init__(config)
        self.host = host or config.address
        self.port = port or config.port

    async def _open(self) -> None:
        logger.info(f"Connecting to ELM327 via WiFi: {self.host}:{self.port}")
        self._reader, self._writer = await asyncio.open_connection(self.host, self.port)


class SerialTransport(StreamTransport):
    """Serial port connection (USB or Bluetooth RFCOMM)."""

    name = "serial"

    def __init__(self, device: Optional[str] = None, baudrate: Optional[int] = None,
                 config: Optional[ConnectionConfig] = None):
        config = config or ConnectionConfig(connection_type=ConnectionType.SERIAL)
        super().__init__(config)
        self.device = device or config.address
        self.baudrate = baudrate or config.baudrate
        self._framer = ResponseFramer()

    async def _open(self) -> None:
        try:
            import serial_asyncio
        except ImportError as e:
            raise TransportError("pyserial-asyncio not installed. Run: pip install pyserial-asyncio") from e

        logger.info(f"Connecting to ELM327 via serial: {self.device} @ {self.baudrate}")
        self._framer.reset()
        self._reader, self._writer = await serial_asyncio.open_serial_connection(
            url=self.device,
            baudrate=self.baudrate,
        )

    def _lines(self, chunk: bytes) -> List[str]:
        # Serial reads split responses anywhere; wait for the prompt
        return self._framer.feed(chunk)


class BLETransport(ELM327Transport):
    """
    BLE connection to an ELM327 exposing a UART-style GATT service.

    Notifications arrive MTU-sized and are reassembled on the ">" prompt.
    Writes go through a queue drained by a single writer task so that
    chunked commands never interleave.
    """

    name = "ble"

    def __init__(self, address: Optional[str] = None,
                 config: Optional[ConnectionConfig] = None):
        config = config or ConnectionConfig(connection_type=ConnectionType.BLE, address="")
        super().__init__(config)
        self.address = address or config.address
        self._client = None
        self._framer = ResponseFramer()
        self._outbox: Optional[asyncio.Queue] = None
        self._disconnected: Optional[asyncio.Event] = None

    @property
    def chunk_size(self) -> int:
        """Largest write payload for the negotiated MTU."""
        mtu = getattr(self._client, "mtu_size", None) or 23
        return max(20, mtu - 3)

    async def _open(self) -> None:
        from bleak import BleakClient, BleakScanner

        if not self.address:
            raise TransportError("No BLE device address configured")

        self._framer.reset()
        self._outbox = asyncio.Queue()
        self._disconnected = asyncio.Event()

        # Address or advertised name; both scans share the connect budget
        scan_timeout = self.config.timeout / 3
        logger.info(f"Scanning for BLE adapter {self.address}...")
        device = await BleakScanner.find_device_by_address(self.address, timeout=scan_timeout)
        if device is None:
            device = await BleakScanner.find_device_by_name(self.address, timeout=scan_timeout)
        if device is None:
            raise TransportError(f"BLE device {self.address} not found")

        self._client = BleakClient(device, disconnected_callback=self._on_disconnect)
        await self._client.connect()

        service = self._client.services.get_service(self.config.service_uuid)
        if service is None:
            raise TransportError(f"Service {self.config.service_uuid} not found on {self.address}")
        for uuid in (self.config.notify_uuid, self.config.write_uuid):
            if service.get_characteristic(uuid) is None:
                raise TransportError(f"Characteristic {uuid} not found on {self.address}")

        await self._client.start_notify(self.config.notify_uuid, self._on_notify)
        logger.info(f"Connected to ELM327 via BLE: {self.address} (chunk {self.chunk_size} bytes)")

    async def _read_loop(self) -> None:
        writer = asyncio.ensure_future(self._write_loop())
        waiter = asyncio.ensure_future(self._disconnected.wait())
        try:
            done, _ = await asyncio.wait({writer, waiter}, return_when=asyncio.FIRST_COMPLETED)
            if writer in done:
                writer.result()  # re-raise write failures
        finally:
            for task in (writer, waiter):
                task.cancel()
            await asyncio.gather(writer, waiter, return_exceptions=True)

    async def _write_loop(self) -> None:
        while True:
            data = await self._outbox.get()
            size = self.chunk_size
            for i in range(0, len(data), size):
                await self._client.write_gatt_char(
                    self.config.write_uuid, data[i:i + size], response=False
                )

    def _write(self, data: bytes) -> None:
        if self._outbox is not None:
            self._outbox.put_nowait(data)

    def _on_notify(self, _sender, data: bytearray) -> None:
        if data:
            self._emit_lines(self._framer.feed(bytes(data)))

    def _on_disconnect(self, client) -> None:
        if client is not self._client:
            return  # already closed by us
        logger.warning(f"BLE adapter {self.address} disconnected")
        if self._disconnected is not None:
            self._disconnected.set()

    async def _close(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        try:
            if client.is_connected:
                await client.stop_notify(self.config.notify_uuid)
            await client.disconnect()
        except Exception as e:
            logger.debug(f"ble: error while closing: {e}")


def create_transport(config: ConnectionConfig) -> ELM327Transport:
    """
    Factory function to create the appropriate transport.

    Args:
        config: Connection settings

    Returns:
        Transport instance (not yet connected)
    """
    if config.connection_type == ConnectionType.WIFI:
        return WiFiTransport(config=config)
    if config.connection_type == ConnectionType.BLE:
        return BLETransport(config=config)
    if config.connection_type == ConnectionType.SERIAL:
        return SerialTransport(config=config)
    if config.connection_type == ConnectionType.DEMO:
        from .demo import DemoTransport
        return DemoTransport(config=config)
    raise ValueError(f"Unknown connection type: {config.connection_type}")
