"""
Incremental extraction of a hidden state block from streamed model text.

Model replies are prose optionally followed by ``<STATE>{...}</STATE>``. Text
before the opening delimiter is visible and is released as it arrives; the
delimited JSON object is hidden state. Fragment boundaries are arbitrary, so
a delimiter may be split across any number of fragments.

The parser is a three-phase state machine::

    SCANNING_VISIBLE --open delimiter--> SCANNING_MARKER --close delimiter--> DONE

Each ``feed`` only looks at the new fragment plus at most one delimiter's
worth of carried-over text, so the cost per fragment does not grow with the
length of the reply.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import List, Optional

from .state import StreamState
from ..core.errors import StateParseFailure

logger = logging.getLogger(__name__)

DEFAULT_OPEN_MARKER = "<STATE>"
DEFAULT_CLOSE_MARKER = "</STATE>"


class Phase(Enum):
    SCANNING_VISIBLE = "scanning_visible"
    SCANNING_MARKER = "scanning_marker"
    DONE = "done"


def _partial_prefix_length(text: str, marker: str) -> int:
    """Length of the longest suffix of ``text`` that is a proper prefix of ``marker``."""
    for length in range(min(len(text), len(marker) - 1), 0, -1):
        if text.endswith(marker[:length]):
            return length
    return 0


class StreamStateExtractor:
    """Splits a fragmented reply into visible text and a hidden state block."""

    def __init__(self, open_marker: str = DEFAULT_OPEN_MARKER, close_marker: str = DEFAULT_CLOSE_MARKER):
        if not open_marker or not close_marker:
            raise ValueError("state markers cannot be empty")
        self.open_marker = open_marker
        self.close_marker = close_marker
        self.phase = Phase.SCANNING_VISIBLE
        self._visible: List[str] = []
        self._held = ""
        self._marker = ""
        self._trailing: List[str] = []

    def feed(self, fragment: str) -> str:
        """Consume one fragment and return the newly visible text (may be empty)."""
        if not fragment:
            return ""
        if self.phase is Phase.SCANNING_VISIBLE:
            return self._scan_visible(self._held + fragment)
        if self.phase is Phase.SCANNING_MARKER:
            self._scan_marker(fragment)
        else:
            self._trailing.append(fragment)
        return ""

    def finish(self) -> str:
        """Release text held back as a possible delimiter start. Call once at end of stream."""
        if self.phase is not Phase.SCANNING_VISIBLE or not self._held:
            return ""
        tail, self._held = self._held, ""
        self._visible.append(tail)
        return tail

    def _scan_visible(self, text: str) -> str:
        index = text.find(self.open_marker)
        if index >= 0:
            visible = text[:index]
            self._held = ""
            self.phase = Phase.SCANNING_MARKER
            self._scan_marker(text[index + len(self.open_marker):])
        else:
            held = _partial_prefix_length(text, self.open_marker)
            visible = text[:len(text) - held]
            self._held = text[len(text) - held:]
        if visible:
            self._visible.append(visible)
        return visible

    def _scan_marker(self, text: str) -> None:
        if not text:
            return
        start = max(0, len(self._marker) - len(self.close_marker) + 1)
        self._marker += text
        index = self._marker.find(self.close_marker, start)
        if index < 0:
            return
        trailing = self._marker[index + len(self.close_marker):]
        self._marker = self._marker[:index]
        self.phase = Phase.DONE
        if trailing:
            self._trailing.append(trailing)

    @property
    def visible_text(self) -> str:
        """Everything released by feed/finish so far."""
        return "".join(self._visible)

    @property
    def marker_body(self) -> Optional[str]:
        """Text between the delimiters, or None until the block is closed."""
        return self._marker if self.phase is Phase.DONE else None

    @property
    def reply(self) -> str:
        """Final reply text: the full response with the state block removed."""
        text = self.visible_text + self._held
        if self.phase is Phase.DONE:
            text += "".join(self._trailing)
        return text.strip()

    def parse_state(self, now: datetime) -> Optional[StreamState]:
        """Parse the closed state block, stamping it with ``now``.

        A missing, unterminated or malformed block yields None.
        """
        if self.phase is Phase.SCANNING_MARKER:
            logger.warning("State block was not terminated; omitting state")
            return None
        body = self.marker_body
        if body is None:
            return None
        try:
            return StreamState.from_json(body.strip(), updated_at=now)
        except StateParseFailure as e:
            logger.warning("Ignoring malformed state block: %s", e)
            return None
