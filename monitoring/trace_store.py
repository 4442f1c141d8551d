"""
Append-only storage for construction traces.

Traces are written once and never updated. `JsonlTraceStore` keeps one
JSON document per line so the file can be tailed or shipped as-is.
"""

import json
import logging
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Optional, Protocol, Union

if TYPE_CHECKING:
    from .tracing import ConstructionTrace

logger = logging.getLogger(__name__)


class TraceStore(Protocol):
    """Persistent trace collaborator."""

    def append(self, trace: "ConstructionTrace") -> None: ...

    def get(self, trace_id: str) -> Optional["ConstructionTrace"]: ...


class InMemoryTraceStore:
    """Thread-safe append-only trace store held in memory."""

    def __init__(self):
        self._lock = threading.Lock()
        self._traces: Dict[str, "ConstructionTrace"] = {}

    def append(self, trace: "ConstructionTrace") -> None:
        """
        Store a trace.

        Raises:
            ValueError: A trace with the same id was already stored
        """
        with self._lock:
            if trace.trace_id in self._traces:
                raise ValueError(f"Trace {trace.trace_id} already stored")
            self._traces[trace.trace_id] = trace

    def get(self, trace_id: str) -> Optional["ConstructionTrace"]:
        with self._lock:
            return self._traces.get(trace_id)

    def list_ids(self) -> List[str]:
        with self._lock:
            return list(self._traces)

    def __len__(self) -> int:
        with self._lock:
            return len(self._traces)


class JsonlTraceStore:
    """Append-only JSON-lines trace file with an in-memory index."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._lock = threading.Lock()
        self._index: Dict[str, int] = {}
        if self.path.exists():
            self._load_index()

    def _load_index(self) -> None:
        with self.path.open("r", encoding="utf-8") as f:
            offset = 0
            for line in f:
                if line.strip():
                    self._index[json.loads(line)["trace_id"]] = offset
                offset += len(line.encode("utf-8"))
        logger.info(f"Loaded {len(self._index)} traces from {self.path}")

    def append(self, trace: "ConstructionTrace") -> None:
        line = json.dumps(trace.to_dict(), default=str) + "\n"
        with self._lock:
            if trace.trace_id in self._index:
                raise ValueError(f"Trace {trace.trace_id} already stored")
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("ab") as f:
                offset = f.tell()
                f.write(line.encode("utf-8"))
            self._index[trace.trace_id] = offset

    def get(self, trace_id: str) -> Optional["ConstructionTrace"]:
        from .tracing import ConstructionTrace

        with self._lock:
            offset = self._index.get(trace_id)
            if offset is None:
                return None
            with self.path.open("rb") as f:
                f.seek(offset)
                data = json.loads(f.readline().decode("utf-8"))
        return ConstructionTrace.from_dict(data)

    def __len__(self) -> int:
        with self._lock:
            return len(self._index)


def get_trace_store(path: Optional[str] = None) -> TraceStore:
    """JSON-lines store when a path is configured, otherwise in memory."""
    if path:
        return JsonlTraceStore(path)
    return InMemoryTraceStore()
