"""
Run events for merges.

A `RunEventLog` is bound to one merge run and writes canonical JSON lines
to an optional sink (file-like object). Without a sink nothing is written.
Tile progress arrives from worker threads, so writes are serialised.

Event types, in run order:
    run_start, phase_start, phase_progress*, phase_end, ..., run_end
A cancelled run emits run_stop_requested before its run_end.
"""

import json
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Optional

PHASE_IDS = {'ALIGNING': 1, 'MERGING': 2, 'NORMALIZING': 3}


def json_dumps_canonical(obj: Any) -> bytes:
    """Canonical JSON serialization."""
    return json.dumps(obj, ensure_ascii=False, sort_keys=True, separators=(",", ":")).encode("utf-8")


class RunEventLog:
    def __init__(self, run_id: str, sink=None):
        self.run_id = run_id
        self.sink = sink
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self.sink is not None

    def _write(self, event_type: str, phase: Optional[str] = None, **fields: Any) -> Optional[Dict[str, Any]]:
        if self.sink is None:
            return None
        event: Dict[str, Any] = {
            "type": event_type,
            "run_id": self.run_id,
            "ts": datetime.now(timezone.utc).isoformat(),
        }
        if phase is not None:
            event["phase"] = PHASE_IDS.get(phase, 0)
            event["phase_name"] = phase
        event.update(fields)
        line = json_dumps_canonical(event).decode("utf-8")
        with self._lock:
            self.sink.write(line + "\n")
            self.sink.flush()
        return event

    def run_start(self, frames: int, tiles: int, **extra: Any):
        return self._write("run_start", frames=frames, tiles=tiles, **extra)

    def run_end(self, status: str, **extra: Any):
        return self._write("run_end", status=status, **extra)

    def phase_start(self, phase: str, **extra: Any):
        return self._write("phase_start", phase, **extra)

    def phase_end(self, phase: str, status: str = "ok", **extra: Any):
        return self._write("phase_end", phase, status=status, **extra)

    def phase_progress(self, phase: str, current: int, total: int):
        return self._write("phase_progress", phase, current=current, total=total)

    def stop_requested(self, phase: str):
        """Record a honoured cancellation request in `phase`."""
        return self._write("run_stop_requested", phase)
