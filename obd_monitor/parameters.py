"""
Live-data parameter catalog (Mode 01).

Nine standard PIDs, polled in catalog order. Each entry knows its
request code, how to decode the adapter's hex response into a display
string, and how to encode a value back into a response (used by the
demo adapter and tests).

Reference: SAE J1979 / ISO 15031-5
"""

import binascii
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple, Union

from .errors import DecodeError

UNAVAILABLE = "unavailable"

MODE_CURRENT_DATA = 0x01
RESPONSE_CURRENT_DATA = "41"


def compact_hex(response: str) -> str:
    """Upper-case a response and drop whitespace and the prompt."""
    return "".join(response.upper().replace(">", "").split())


def hex_to_bytes(data_hex: str) -> bytes:
    try:
        return binascii.unhexlify(data_hex)
    except (binascii.Error, ValueError) as e:
        raise DecodeError(f"Invalid hex payload {data_hex!r}: {e}", data_hex) from e


@dataclass(frozen=True)
class ParameterSpec:
    """Definition of one pollable parameter."""
    id: str
    name: str
    pid: int
    unit: str
    num_bytes: int
    formula: Callable[[bytes], float]
    inverse: Callable[[float], int]  # value -> raw unsigned integer
    precision: int = 0  # 0 = truncated integer, 1 = one decimal

    @property
    def request_code(self) -> str:
        return f"{MODE_CURRENT_DATA:02X}{self.pid:02X}"

    @property
    def response_prefix(self) -> str:
        return f"{RESPONSE_CURRENT_DATA}{self.pid:02X}"

    @property
    def max_raw(self) -> int:
        return (1 << (8 * self.num_bytes)) - 1

    def decode_bytes(self, data: bytes) -> float:
        """Decode raw bytes to value using formula."""
        if len(data) < self.num_bytes:
            raise DecodeError(f"{self.id}: expected {self.num_bytes} bytes, got {len(data)}")
        return self.formula(data[:self.num_bytes])

    def format_value(self, value: float) -> str:
        if self.precision:
            return f"{value:.{self.precision}f}"
        return str(int(value))

    def decode(self, response: str) -> Optional[str]:
        """
        Decode an adapter response line for this parameter.

        Accepts "41 0C 1A F8" and "410C1AF8" alike. Returns None when the
        response belongs to another PID or is too short to hold the data.

        Raises:
            DecodeError: the data bytes are not valid hex
        """
        payload = compact_hex(response)
        if not payload.startswith(self.response_prefix):
            return None
        data_hex = payload[len(self.response_prefix):][:self.num_bytes * 2]
        if len(data_hex) < self.num_bytes * 2:
            return None
        return self.format_value(self.decode_bytes(hex_to_bytes(data_hex)))

    def encode(self, value: float) -> str:
        """Encode a value as the data bytes of a response (hex, no spaces)."""
        raw = max(0, min(self.max_raw, int(self.inverse(value))))
        return f"{raw:0{self.num_bytes * 2}X}"

    def encode_response(self, value: float, spaces: bool = True) -> str:
        """Build a complete Mode 01 response line for value."""
        data = self.encode(value)
        if not spaces:
            return self.response_prefix + data
        octets = [self.response_prefix[:2], self.response_prefix[2:]]
        octets += [data[i:i + 2] for i in range(0, len(data), 2)]
        return " ".join(octets)


@dataclass(frozen=True)
class ParameterSample:
    """Latest reading of one parameter."""
    parameter_id: str
    value: str = UNAVAILABLE
    unit: str = ""
    timestamp: Optional[datetime] = None

    @property
    def available(self) -> bool:
        return self.value != UNAVAILABLE

    def to_dict(self) -> dict:
        return {
            "id": self.parameter_id,
            "value": self.value,
            "unit": self.unit,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }


# Catalog in polling order
CATALOG: List[ParameterSpec] = []
PARAMETERS: Dict[str, ParameterSpec] = {}


def register_parameter(
    id: str,
    name: str,
    pid: int,
    unit: str,
    num_bytes: int,
    formula: Callable[[bytes], float],
    inverse: Callable[[float], int],
    precision: int = 0,
) -> ParameterSpec:
    """Register a parameter and append it to the polling order."""
    spec = ParameterSpec(
        id=id,
        name=name,
        pid=pid,
        unit=unit,
        num_bytes=num_bytes,
        formula=formula,
        inverse=inverse,
        precision=precision,
    )
    CATALOG.append(spec)
    PARAMETERS[id] = spec
    return spec


def _percent_raw(value: float) -> int:
    # Round up so the truncating decode lands back on value
    return math.ceil(value * 255 / 100)


# -----------------------------------------------------------------------------
# Catalog
# -----------------------------------------------------------------------------

RPM = register_parameter(
    id="rpm",
    name="Engine RPM",
    pid=0x0C,
    unit="rpm",
    num_bytes=2,
    formula=lambda d: ((d[0] * 256) + d[1]) / 4,
    inverse=lambda v: round(v * 4),
)

SPEED = register_parameter(
    id="speed",
    name="Vehicle Speed",
    pid=0x0D,
    unit="km/h",
    num_bytes=1,
    formula=lambda d: d[0],
    inverse=lambda v: round(v),
)

COOLANT_TEMP = register_parameter(
    id="coolant_temp",
    name="Coolant Temperature",
    pid=0x05,
    unit="°C",
    num_bytes=1,
    formula=lambda d: d[0] - 40,
    inverse=lambda v: round(v) + 40,
)

ENGINE_LOAD = register_parameter(
    id="engine_load",
    name="Engine Load",
    pid=0x04,
    unit="%",
    num_bytes=1,
    formula=lambda d: d[0] * 100 / 255,
    inverse=_percent_raw,
)

THROTTLE_POSITION = register_parameter(
    id="throttle_position",
    name="Throttle Position",
    pid=0x11,
    unit="%",
    num_bytes=1,
    formula=lambda d: d[0] * 100 / 255,
    inverse=_percent_raw,
)

FUEL_LEVEL = register_parameter(
    id="fuel_level",
    name="Fuel Level",
    pid=0x2F,
    unit="%",
    num_bytes=1,
    formula=lambda d: d[0] * 100 / 255,
    inverse=_percent_raw,
)

INTAKE_AIR_TEMP = register_parameter(
    id="intake_air_temp",
    name="Intake Air Temperature",
    pid=0x0F,
    unit="°C",
    num_bytes=1,
    formula=lambda d: d[0] - 40,
    inverse=lambda v: round(v) + 40,
)

MAF = register_parameter(
    id="maf",
    name="Mass Air Flow",
    pid=0x10,
    unit="g/s",
    num_bytes=2,
    formula=lambda d: ((d[0] * 256) + d[1]) / 100,
    inverse=lambda v: round(v * 100),
    precision=1,
)

TIMING_ADVANCE = register_parameter(
    id="timing_advance",
    name="Timing Advance",
    pid=0x0E,
    unit="°",
    num_bytes=1,
    formula=lambda d: (d[0] - 128) / 2,
    inverse=lambda v: round(v * 2) + 128,
    precision=1,
)


# -----------------------------------------------------------------------------
# Lookup helpers
# -----------------------------------------------------------------------------

def get_parameter(key: Union[str, int]) -> Optional[ParameterSpec]:
    """Find a catalog entry by id, request code ("010C"), or PID number."""
    if isinstance(key, int):
        for spec in CATALOG:
            if spec.pid == key:
                return spec
        return None
    if key in PARAMETERS:
        return PARAMETERS[key]
    code = key.upper()
    for spec in CATALOG:
        if spec.request_code == code:
            return spec
    return None


def decode_any(response: str) -> Optional[Tuple[ParameterSpec, str]]:
    """
    Try every catalog entry in order.

    Returns:
        (spec, formatted value) for the first entry that recognizes the
        response, or None
    """
    for spec in CATALOG:
        value = spec.decode(response)
        if value is not None:
            return spec, value
    return None


def initial_samples() -> Dict[str, ParameterSample]:
    """One unavailable sample per catalog entry, in catalog order."""
    return {spec.id: ParameterSample(spec.id, UNAVAILABLE, spec.unit) for spec in CATALOG}
