"""
Simulated ELM327 adapter for demo mode and tests.

Answers the same commands a real adapter would (AT setup, modes 01-04)
from a drifting simulated vehicle, so the session engine runs unchanged
on top of it.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Dict, List, Optional

from .config import ConnectionConfig, ConnectionType
from .dtc import FREEZE_FRAME_DTC_PID, encode_dtc
from .framing import ResponseFramer
from .parameters import get_parameter
from .transport import ELM327Transport

logger = logging.getLogger(__name__)

BANNER = "ELM327 v1.5"


@dataclass
class SimulatedRange:
    """Bounds and per-tick drift for one simulated parameter."""
    minimum: float
    maximum: float
    drift: float
    start: float


DEMO_RANGES: Dict[str, SimulatedRange] = {
    "rpm": SimulatedRange(650, 3500, 150, 1200),
    "speed": SimulatedRange(0, 120, 8, 60),
    "coolant_temp": SimulatedRange(80, 100, 2, 90),
    "engine_load": SimulatedRange(20, 85, 5, 50),
    "throttle_position": SimulatedRange(5, 75, 6, 30),
    "fuel_level": SimulatedRange(25, 90, 1, 55),
    "intake_air_temp": SimulatedRange(15, 45, 2, 28),
    "maf": SimulatedRange(2.0, 15.0, 1.0, 8.0),
    "timing_advance": SimulatedRange(-5, 25, 2, 10.0),
}

DEMO_DTCS = ["P0300", "P0420", "P0171"]

# Freeze frame value ranges (values captured when the first code was set)
FREEZE_FRAME_RANGES = {
    "rpm": (1500, 3500),
    "speed": (40, 90),
    "coolant_temp": (85, 100),
    "engine_load": (30, 70),
    "throttle_position": (15, 45),
    "intake_air_temp": (20, 40),
    "maf": (5.0, 15.0),
}


class SimulatedVehicle:
    """Engine values that wander within realistic bounds."""

    def __init__(self, seed: Optional[int] = None, tick_interval: float = 1.5):
        self._rng = random.Random(seed)
        self.tick_interval = tick_interval
        self._last_tick = time.monotonic()
        self.values: Dict[str, float] = {k: r.start for k, r in DEMO_RANGES.items()}
        self.stored_codes: List[str] = list(DEMO_DTCS)
        self.freeze_frame: Dict[str, float] = self._capture_freeze_frame()

    def _capture_freeze_frame(self) -> Dict[str, float]:
        frame = {}
        for key, (low, high) in FREEZE_FRAME_RANGES.items():
            if isinstance(low, int):
                frame[key] = self._rng.randint(low, high)
            else:
                frame[key] = round(self._rng.uniform(low, high), 1)
        return frame

    def tick(self) -> None:
        for key, r in DEMO_RANGES.items():
            value = self.values[key] + self._rng.uniform(-r.drift, r.drift)
            self.values[key] = max(r.minimum, min(r.maximum, value))

    def maybe_tick(self) -> None:
        now = time.monotonic()
        if now - self._last_tick >= self.tick_interval:
            self._last_tick = now
            self.tick()

    def clear_codes(self) -> None:
        self.stored_codes = []
        self.freeze_frame = {}


class SimulatedAdapter:
    """
    Minimal ELM327 command interpreter.

    Honors ATZ (echo and spaces back on), ATE0 and ATS0 so the engine
    sees the same echo and spacing behaviour as on a real adapter.
    """

    def __init__(self, vehicle: Optional[SimulatedVehicle] = None):
        self.vehicle = vehicle or SimulatedVehicle()
        self.echo = True
        self.spaces = True

    def _fmt(self, hex_str: str) -> str:
        if not self.spaces:
            return hex_str
        return " ".join(hex_str[i:i + 2] for i in range(0, len(hex_str), 2))

    def handle(self, command: str) -> List[str]:
        cmd = "".join(command.upper().split())
        lines = [cmd] if self.echo else []
        if not cmd:
            return lines
        if cmd.startswith("AT"):
            return lines + self._handle_at(cmd[2:])
        return lines + self._handle_obd(cmd)

    def _handle_at(self, cmd: str) -> List[str]:
        if cmd in ("Z", "WS"):
            self.echo = True
            self.spaces = True
            return [BANNER]
        if cmd == "I":
            return [BANNER]
        if cmd in ("E0", "E1"):
            self.echo = cmd == "E1"
        elif cmd in ("S0", "S1"):
            self.spaces = cmd == "S1"
        return ["OK"]

    def _handle_obd(self, cmd: str) -> List[str]:
        vehicle = self.vehicle
        if cmd == "03":
            codes = [encode_dtc(c) for c in vehicle.stored_codes]
            if not codes:
                return ["NO DATA"]
            while len(codes) % 3:
                codes.append("0000")
            return [self._fmt("43" + "".join(codes))]
        if cmd == "04":
            vehicle.clear_codes()
            return ["44"]
        if len(cmd) != 4:
            return ["?"]
        try:
            mode, pid = cmd[:2], int(cmd[2:], 16)
        except ValueError:
            return ["?"]
        if mode == "01":
            vehicle.maybe_tick()
            spec = get_parameter(pid)
            if spec is None:
                return ["NO DATA"]
            return [self._fmt(spec.response_prefix + spec.encode(vehicle.values[spec.id]))]
        if mode == "02":
            if not vehicle.stored_codes:
                return ["NO DATA"]
            if pid == FREEZE_FRAME_DTC_PID:
                return [self._fmt(f"42{pid:02X}" + encode_dtc(vehicle.stored_codes[0]))]
            spec = get_parameter(pid)
            if spec is None or spec.id not in vehicle.freeze_frame:
                return ["NO DATA"]
            return [self._fmt(f"42{pid:02X}" + spec.encode(vehicle.freeze_frame[spec.id]))]
        return ["?"]


class DemoTransport(ELM327Transport):
    """Transport backed by SimulatedAdapter instead of real hardware."""

    name = "demo"

    def __init__(self, adapter: Optional[SimulatedAdapter] = None,
                 latency: float = 0.05, config: Optional[ConnectionConfig] = None):
        super().__init__(config or ConnectionConfig(connection_type=ConnectionType.DEMO, address="demo"))
        self.adapter = adapter or SimulatedAdapter()
        self.latency = latency
        self._framer = ResponseFramer()
        self._inbox: Optional[asyncio.Queue] = None

    async def _open(self) -> None:
        self._inbox = asyncio.Queue()
        self._framer.reset()
        await asyncio.sleep(self.latency)

    async def _read_loop(self) -> None:
        while True:
            command = await self._inbox.get()
            await asyncio.sleep(self.latency)
            lines = self.adapter.handle(command)
            # Framed like a real adapter: lines, blank line, prompt
            raw = "\r".join(lines) + "\r\r>"
            self._emit_lines(self._framer.feed(raw.encode("ascii")))

    def _write(self, data: bytes) -> None:
        if self._inbox is not None:
            self._inbox.put_nowait(data.decode("ascii").strip())

    async def _close(self) -> None:
        self._inbox = None
