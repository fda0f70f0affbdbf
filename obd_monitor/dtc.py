"""
Diagnostic Trouble Code codec.

    Mode 02: freeze frame       -> "42 <PID> <data...>"
    Mode 03: read stored DTCs   -> "43 <b1 b2> <b1 b2> ..."
    Mode 04: clear DTCs         -> "44"

Each stored code is two bytes:

    b1: CC DD NNNN    CC = category (P/C/B/U), DD = first digit, NNNN = second
    b2: NNNN NNNN     third and fourth digits
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from .errors import DecodeError
from .parameters import CATALOG, compact_hex, get_parameter, hex_to_bytes

logger = logging.getLogger(__name__)

RESPONSE_FREEZE_FRAME = "42"
RESPONSE_STORED_DTCS = "43"
RESPONSE_CLEAR_DTCS = "44"
NEGATIVE_RESPONSE = "7F"

# Freeze-frame PID 02 holds the DTC that triggered the frame
FREEZE_FRAME_DTC_PID = 0x02


class DTCCategory(Enum):
    """DTC category, selected by the top two bits of the first byte."""
    POWERTRAIN = "P"
    CHASSIS = "C"
    BODY = "B"
    NETWORK = "U"


_CATEGORY_BITS = ["P", "C", "B", "U"]


@dataclass
class FreezeFrame:
    """Snapshot of live data the vehicle stored when a DTC was set."""
    dtc: str
    values: Dict[str, str] = field(default_factory=dict)
    captured_at: datetime = field(default_factory=datetime.now)

    @property
    def has_data(self) -> bool:
        return bool(self.values)

    def to_dict(self) -> dict:
        return {
            "dtc": self.dtc,
            "values": dict(self.values),
            "captured_at": self.captured_at.isoformat(),
        }


@dataclass
class DTC:
    """Diagnostic Trouble Code."""
    code: str  # e.g. "P0300"
    raw: str = ""  # e.g. "0300"
    freeze_frame: Optional[FreezeFrame] = None

    @property
    def category(self) -> DTCCategory:
        return DTCCategory(self.code[0].upper())

    @property
    def is_manufacturer_specific(self) -> bool:
        """P1xxx, P3xxx, etc."""
        return len(self.code) >= 2 and self.code[1] in ("1", "3")

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "raw": self.raw,
            "category": self.category.name.lower(),
            "freeze_frame": self.freeze_frame.to_dict() if self.freeze_frame else None,
        }


def decode_dtc(hex_code: str) -> str:
    """
    Decode a 4-character hex DTC.

    Args:
        hex_code: e.g. "0133"

    Returns:
        DTC string, e.g. "P0133"
    """
    if len(hex_code) != 4:
        raise DecodeError(f"DTC must be 4 hex characters, got {hex_code!r}", hex_code)
    b1, b2 = hex_to_bytes(hex_code)
    category = _CATEGORY_BITS[(b1 >> 6) & 0x03]
    return f"{category}{(b1 >> 4) & 0x03}{b1 & 0x0F:X}{b2 >> 4:X}{b2 & 0x0F:X}"


def encode_dtc(code: str) -> str:
    """Encode "P0133" back into its 4-character hex form "0133"."""
    code = code.strip().upper()
    if len(code) != 5 or code[0] not in _CATEGORY_BITS:
        raise DecodeError(f"Invalid DTC {code!r}", code)
    try:
        first = int(code[1], 16)
        rest = int(code[2:], 16)
    except ValueError as e:
        raise DecodeError(f"Invalid DTC {code!r}", code) from e
    if first > 3:
        raise DecodeError(f"Invalid DTC {code!r}: first digit must be 0-3", code)
    b1 = (_CATEGORY_BITS.index(code[0]) << 6) | (first << 4) | (rest >> 8)
    return f"{b1:02X}{rest & 0xFF:02X}"


def parse_dtc_response(response: str) -> List[DTC]:
    """
    Parse a Mode 03 response into DTCs.

    "0000" pairs are padding and are skipped. A trailing partial group
    is ignored.
    """
    payload = compact_hex(response)
    if payload.startswith(RESPONSE_STORED_DTCS):
        payload = payload[len(RESPONSE_STORED_DTCS):]
    dtcs = []
    for i in range(0, len(payload) - 3, 4):
        chunk = payload[i:i + 4]
        if chunk == "0000":
            continue
        dtcs.append(DTC(code=decode_dtc(chunk), raw=chunk))
    if len(payload) % 4:
        logger.debug(f"Ignoring trailing DTC bytes in {response!r}")
    return dtcs


def is_clear_acknowledged(response: str) -> bool:
    """True for a Mode 04 acknowledgement, False for a negative response."""
    payload = compact_hex(response)
    if payload.startswith(RESPONSE_CLEAR_DTCS):
        return True
    if payload.startswith(NEGATIVE_RESPONSE):
        return False
    raise DecodeError(f"Unexpected clear response {response!r}", response)


def freeze_frame_request(pid: int) -> str:
    return f"02{pid:02X}"


# PID 02 first so the owning DTC is known before the data arrives
FREEZE_FRAME_PIDS: List[int] = [FREEZE_FRAME_DTC_PID] + [spec.pid for spec in CATALOG]


def parse_freeze_frame(
    response: str,
    dtc: str = "",
    frame: Optional[FreezeFrame] = None,
) -> FreezeFrame:
    """
    Decode one Mode 02 response and merge it into a snapshot.

    Payload after "42" is <PID><data>. Some adapters insert the frame
    number after the PID ("42 0C 00 1A F8"); both layouts are accepted.

    Returns:
        The updated frame (a new one when frame is None)
    """
    frame = frame if frame is not None else FreezeFrame(dtc=dtc)
    payload = compact_hex(response)
    if not payload.startswith(RESPONSE_FREEZE_FRAME) or len(payload) < 4:
        raise DecodeError(f"Not a freeze frame response: {response!r}", response)
    pid = hex_to_bytes(payload[2:4])[0]
    data_hex = payload[4:]

    if pid == FREEZE_FRAME_DTC_PID:
        if len(data_hex) == 6:
            data_hex = data_hex[2:]
        code = decode_dtc(data_hex[:4])
        if code != "P0000":
            frame.dtc = code
        return frame

    spec = get_parameter(pid)
    if spec is None:
        logger.debug(f"Freeze frame PID {pid:02X} not in catalog, skipped")
        return frame
    if len(data_hex) == (spec.num_bytes + 1) * 2:
        data_hex = data_hex[2:]
    data = hex_to_bytes(data_hex[:spec.num_bytes * 2])
    frame.values[spec.id] = spec.format_value(spec.decode_bytes(data))
    return frame
