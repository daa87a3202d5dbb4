"""Model calls with balance precheck, streaming and cost reconciliation."""

from .engine import GenerationCore, GenerationRequest, GenerationResult, PreparedCall
from .sinks import ContentTap, MemorySink, MetadataTap, QueueSink, StreamWriter

__all__ = [
    "ContentTap",
    "GenerationCore",
    "GenerationRequest",
    "GenerationResult",
    "MemorySink",
    "MetadataTap",
    "PreparedCall",
    "QueueSink",
    "StreamWriter",
]
