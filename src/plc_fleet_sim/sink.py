"""Point sinks: where transformed time-series points are written."""

import logging
import sys
import threading
from typing import IO, List, Optional

from .errors import TransportError
from .models import DataPoint

logger = logging.getLogger(__name__)


class PointSink:
    """Write contract for a time-series store.

    ``write_points`` raises TransportError when the store rejects a write.
    """

    def write_points(self, points: List[DataPoint]) -> None:
        raise NotImplementedError

    def flush(self) -> None:
        pass

    def close(self) -> None:
        self.flush()


class MemorySink(PointSink):
    """Keeps every point in a list."""

    def __init__(self):
        self.points: List[DataPoint] = []
        self._lock = threading.Lock()

    def write_points(self, points: List[DataPoint]) -> None:
        with self._lock:
            self.points.extend(points)

    def measurements(self) -> List[str]:
        return [p.measurement for p in self.points]


class LineProtocolSink(PointSink):
    """Writes InfluxDB line protocol, one point per line."""

    def __init__(self, stream: Optional[IO[str]] = None, path: Optional[str] = None):
        self._owns_stream = stream is None and path not in (None, "-")
        if self._owns_stream:
            stream = open(path, "a")
        self.stream = stream or sys.stdout
        self.points_written = 0
        self._lock = threading.Lock()

    def write_points(self, points: List[DataPoint]) -> None:
        with self._lock:
            try:
                for point in points:
                    self.stream.write(point.to_line_protocol() + "\n")
            except (OSError, ValueError) as e:
                raise TransportError(f"cannot write line protocol: {e}")
            self.points_written += len(points)

    def flush(self) -> None:
        with self._lock:
            self.stream.flush()

    def close(self) -> None:
        self.flush()
        if self._owns_stream:
            self.stream.close()
            logger.info(f"Closed line protocol output after {self.points_written} points")
