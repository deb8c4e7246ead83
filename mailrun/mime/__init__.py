"""Streaming MIME composition into memory or spool-file sinks."""

from mailrun.mime.sink import MEMORY_MAX_SIZE, MemorySink, Sink, SpoolFileSink, open_sink
from mailrun.mime.writer import compose, estimate_size

__all__ = ["MEMORY_MAX_SIZE", "MemorySink", "Sink", "SpoolFileSink", "compose", "estimate_size", "open_sink"]
