"""
Structured conversation state carried in a hidden block of model output.

The block is a single JSON object. Parsing validates every known field and
fails with StateParseFailure rather than letting a malformed value through.
"""

import json
import math
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from ..core.errors import StateParseFailure


@dataclass(frozen=True)
class OutlineItem:
    heading: str
    summary: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"heading": self.heading}
        if self.summary is not None:
            data["summary"] = self.summary
        return data


@dataclass(frozen=True)
class ContentSection:
    heading: str
    content: str

    def to_dict(self) -> Dict[str, Any]:
        return {"heading": self.heading, "content": self.content}


@dataclass(frozen=True)
class StreamState:
    """Snapshot of conversation metadata extracted from one model reply.

    ``None`` / empty fields mean "not mentioned in this reply"; see merged_onto.
    """
    topic: Optional[str] = None
    outline: List[OutlineItem] = field(default_factory=list)
    confidence: Optional[float] = None
    stage: Optional[str] = None
    content_approved: Optional[bool] = None
    content_sections: List[ContentSection] = field(default_factory=list)
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.topic is not None:
            data["topic"] = self.topic
        if self.outline:
            data["outline"] = [item.to_dict() for item in self.outline]
        if self.confidence is not None:
            data["confidence"] = self.confidence
        if self.stage is not None:
            data["stage"] = self.stage
        if self.content_approved is not None:
            data["contentApproved"] = self.content_approved
        if self.content_sections:
            data["contentSections"] = [section.to_dict() for section in self.content_sections]
        if self.updated_at is not None:
            data["updatedAt"] = self.updated_at.isoformat()
        return data

    def merged_onto(self, previous: Optional["StreamState"]) -> "StreamState":
        """Overlay this snapshot on the previous one, field by field."""
        if previous is None:
            return self
        return replace(
            previous,
            topic=self.topic if self.topic is not None else previous.topic,
            outline=self.outline or previous.outline,
            confidence=self.confidence if self.confidence is not None else previous.confidence,
            stage=self.stage if self.stage is not None else previous.stage,
            content_approved=(
                self.content_approved if self.content_approved is not None else previous.content_approved
            ),
            content_sections=self.content_sections or previous.content_sections,
            updated_at=self.updated_at or previous.updated_at,
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], updated_at: Optional[datetime] = None) -> "StreamState":
        """Validate a decoded state object.

        Unknown keys are ignored. ``updated_at``, when given, overrides any
        ``updatedAt`` in the payload; a model reply is stamped on receipt while
        a client-echoed snapshot keeps its own time.

        Raises:
            StateParseFailure: If the object or any known field has the wrong shape
        """
        if not isinstance(data, Mapping):
            raise StateParseFailure("state block must be a JSON object")
        return cls(
            topic=_optional_str(data, "topic"),
            outline=_outline(data.get("outline")),
            confidence=_optional_number(data, "confidence"),
            stage=_optional_str(data, "stage"),
            content_approved=_optional_bool(data, "contentApproved"),
            content_sections=_sections(data.get("contentSections")),
            updated_at=updated_at or _optional_time(data, "updatedAt"),
        )

    @classmethod
    def from_json(cls, text: str, updated_at: Optional[datetime] = None) -> "StreamState":
        try:
            data = json.loads(text)
        except (TypeError, ValueError) as e:
            raise StateParseFailure(f"state block is not valid JSON: {e}")
        return cls.from_dict(data, updated_at=updated_at)


def _optional_str(data: Mapping[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise StateParseFailure(f"'{key}' must be a string")
    return value


def _optional_time(data: Mapping[str, Any], key: str) -> Optional[datetime]:
    value = _optional_str(data, key)
    if value is None:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise StateParseFailure(f"'{key}' must be an ISO-8601 timestamp")


def _optional_number(data: Mapping[str, Any], key: str) -> Optional[float]:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise StateParseFailure(f"'{key}' must be a number")
    return float(value)


def _optional_bool(data: Mapping[str, Any], key: str) -> Optional[bool]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, bool):
        raise StateParseFailure(f"'{key}' must be a boolean")
    return value


def _items(value: Any, key: str) -> List[Mapping[str, Any]]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise StateParseFailure(f"'{key}' must be a list")
    for item in value:
        if not isinstance(item, Mapping):
            raise StateParseFailure(f"'{key}' entries must be objects")
        if not isinstance(item.get("heading"), str):
            raise StateParseFailure(f"'{key}' entries need a string 'heading'")
    return value


def _outline(value: Any) -> List[OutlineItem]:
    return [
        OutlineItem(heading=item["heading"], summary=_optional_str(item, "summary"))
        for item in _items(value, "outline")
    ]


def _sections(value: Any) -> List[ContentSection]:
    sections = []
    for item in _items(value, "contentSections"):
        content = item.get("content")
        if not isinstance(content, str):
            raise StateParseFailure("'contentSections' entries need a string 'content'")
        sections.append(ContentSection(heading=item["heading"], content=content))
    return sections
