"""
Response framing for fragmented adapter streams.

BLE notifications (and raw serial reads) arrive in arbitrary chunks.
The ELM327 ends every response with its input prompt ">", so bytes are
buffered until a prompt shows up, then the completed response is split
into logical lines.
"""

import logging
import re
from typing import List

logger = logging.getLogger(__name__)

PROMPT = b">"

# No single ELM327 response comes close to this
MAX_PENDING = 4096

_LINE_SPLIT = re.compile(r"[\r\n]+")


def split_lines(text: str) -> List[str]:
    """Split a response blob into trimmed, non-empty lines."""
    return [line.strip() for line in _LINE_SPLIT.split(text) if line.strip()]


class ResponseFramer:
    """Reassembles prompt-terminated responses from byte chunks."""

    def __init__(self, prompt: bytes = PROMPT, max_pending: int = MAX_PENDING):
        self._prompt = prompt
        self._max_pending = max_pending
        self._buffer = bytearray()

    @property
    def pending(self) -> bytes:
        """Bytes received since the last prompt."""
        return bytes(self._buffer)

    def feed(self, chunk: bytes) -> List[str]:
        """
        Add a chunk and return any lines completed by it.

        One prompt-terminated response may hold several lines, e.g.
        "SEARCHING...\\rSTOPPED\\r\\r>". Each becomes its own entry.
        """
        self._buffer.extend(chunk)
        lines: List[str] = []
        while True:
            idx = self._buffer.find(self._prompt)
            if idx < 0:
                break
            response = bytes(self._buffer[:idx])
            del self._buffer[:idx + len(self._prompt)]
            text = response.decode("ascii", errors="ignore").strip()
            if text:
                lines.extend(split_lines(text))
        if len(self._buffer) > self._max_pending:
            logger.warning(f"Dropping {len(self._buffer)} bytes received without a prompt")
            self._buffer.clear()
        return lines

    def reset(self) -> None:
        self._buffer.clear()
