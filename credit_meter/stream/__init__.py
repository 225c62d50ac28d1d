"""
Streaming relay for metered model calls.

Forwards provider text as it arrives, strips the hidden state block and
bills the account once the stream ends normally.
"""

from .events import Canceled, Complete, Credits, Delta, End, Error, StreamEvent, encode_sse
from .extractor import StreamStateExtractor
from .relay import ChatReply, StreamRelay, UpstreamChunk, UpstreamReply
from .state import StreamState

__all__ = [
    "Canceled",
    "ChatReply",
    "Complete",
    "Credits",
    "Delta",
    "End",
    "Error",
    "StreamEvent",
    "StreamRelay",
    "StreamState",
    "StreamStateExtractor",
    "UpstreamChunk",
    "UpstreamReply",
    "encode_sse",
]
