from __future__ import annotations

import sys
import threading
from typing import TextIO

from exporter.src.metrics import METRICS


class StdoutSink:
    """Line-oriented output shared by all workers.

    Each record is written as a single ``write`` of ``line + "\\n"`` under a
    lock and flushed immediately, so concurrent workers never interleave
    partial records and a downstream log shipper sees whole lines.
    """

    def __init__(self, stream: TextIO | None = None) -> None:
        self._stream = stream
        self._lock = threading.Lock()

    @property
    def stream(self) -> TextIO:
        return self._stream if self._stream is not None else sys.stdout

    def write(self, line: str) -> None:
        with self._lock:
            stream = self.stream
            stream.write(line + "\n")
            stream.flush()
        METRICS.records_emitted_total.inc()
