"""
Events emitted by the stream relay.

A relay run yields, in order: zero or more Delta, at most one Complete,
exactly one billing outcome (Credits or Error) or Canceled, and finally End.
``to_dict`` gives the transport payload; ``name`` is the event type.
"""

import json
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, ClassVar, Dict, Optional, Union

from .state import StreamState
from ..core.token_counter import TokenUsage


@dataclass(frozen=True)
class Delta:
    name: ClassVar[str] = "delta"
    content: str

    def to_dict(self) -> Dict[str, Any]:
        return {"content": self.content}


@dataclass(frozen=True)
class Complete:
    name: ClassVar[str] = "complete"
    reply: str
    usage: TokenUsage
    model: str
    state: Optional[StreamState] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"reply": self.reply, "usage": self.usage.to_dict(), "model": self.model}
        if self.state is not None:
            data["state"] = self.state.to_dict()
        return data


@dataclass(frozen=True)
class Credits:
    name: ClassVar[str] = "credits"
    cost: Decimal
    remaining: Decimal
    ratio: float
    usage: TokenUsage

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cost": f"{self.cost:.4f}",
            "remaining": f"{self.remaining:.4f}",
            "ratio": self.ratio,
            "usage": self.usage.to_dict(),
        }


@dataclass(frozen=True)
class Error:
    name: ClassVar[str] = "error"
    code: str
    message: str
    required: Optional[Decimal] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.required is not None:
            data["required"] = f"{self.required:.4f}"
        return data


@dataclass(frozen=True)
class Canceled:
    """The caller disconnected. Never forwarded to a user-facing error channel."""
    name: ClassVar[str] = "canceled"

    def to_dict(self) -> Dict[str, Any]:
        return {}


@dataclass(frozen=True)
class End:
    name: ClassVar[str] = "end"

    def to_dict(self) -> Dict[str, Any]:
        return {}


StreamEvent = Union[Delta, Complete, Credits, Error, Canceled, End]


def encode_sse(event: StreamEvent) -> str:
    """Render an event as a server-sent-events frame."""
    return f"event: {event.name}\ndata: {json.dumps(event.to_dict(), ensure_ascii=False)}\n\n"
