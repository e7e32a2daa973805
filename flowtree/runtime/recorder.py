"""
recorder.py - Run trace accumulation and persistence.

RunRecorder collects one TraceEntry per visited node plus an append-only
transcript of every agent output. It sits beside the engine; nothing in the
control flow reads it back.

Artifacts written by write():
    run_<YYYYmmdd_HHMMSS>.json   {"chart": ..., "nodes": [<entry>, ...]}
    run_<YYYYmmdd_HHMMSS>.log    "Chart: <title>" header + transcript
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, TextIO, Union

logger = logging.getLogger(__name__)

OUTPUT_SEPARATOR = "\n---\n"


@dataclass
class TraceEntry:
    """One visited node."""

    node_name: str
    node_kind: str
    response: str
    validation: Optional[Dict[str, Any]] = None
    retries: int = 0
    status: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "node_name": self.node_name,
            "node_type": self.node_kind,
            "response": self.response,
        }
        if self.validation is not None:
            data["validation"] = self.validation
        data["retries"] = {"count": self.retries}
        return data


class RunRecorder:
    """Accumulates the trace of one traversal.

    Args:
        chart_name: Diagram title, used in the persisted artifacts.
        stream: Optional open text stream mirroring the transcript.
    """

    def __init__(self, chart_name: str = "", stream: Optional[TextIO] = None):
        self.chart_name = chart_name
        self._stream = stream
        self._entries: List[TraceEntry] = []
        self._transcript: List[str] = []

    @property
    def entries(self) -> List[TraceEntry]:
        return list(self._entries)

    @property
    def transcript(self) -> str:
        return "".join(self._transcript)

    def append_output(self, text: str) -> None:
        """Append one agent output followed by the separator. Empty output is skipped."""
        if not text:
            return
        if not text.endswith("\n"):
            text += "\n"
        chunk = f"{text}{OUTPUT_SEPARATOR}"
        self._transcript.append(chunk)
        if self._stream is not None:
            self._stream.write(chunk)

    def record(self, entry: TraceEntry) -> None:
        self._entries.append(entry)

    def flush(self) -> None:
        """Flush the mirror stream, if any. Failures are logged, not raised."""
        if self._stream is None:
            return
        try:
            self._stream.flush()
        except (OSError, ValueError) as e:
            logger.warning("Could not flush run transcript stream: %s", e)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "chart": self.chart_name,
            "nodes": [entry.to_dict() for entry in self._entries],
        }

    def write(
        self,
        log_dir: Union[str, Path],
        write_short: bool = True,
        write_long: bool = True,
        timestamp: Optional[datetime] = None,
    ) -> List[Path]:
        """Persist the JSON trace and/or text transcript.

        Returns:
            Paths written, JSON first.
        """
        if not (write_short or write_long):
            return []
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        stamp = (timestamp or datetime.now()).strftime("%Y%m%d_%H%M%S")
        written: List[Path] = []

        if write_short and self._entries:
            short_path = log_dir / f"run_{stamp}.json"
            with open(short_path, "w", encoding="utf-8") as f:
                json.dump(self.to_payload(), f, indent=2)
            written.append(short_path)

        if write_long and (self.chart_name or self._transcript):
            long_path = log_dir / f"run_{stamp}.log"
            with open(long_path, "w", encoding="utf-8") as f:
                if self.chart_name:
                    f.write(f"Chart: {self.chart_name}\n\n")
                f.write(self.transcript)
            written.append(long_path)

        for path in written:
            logger.info("Wrote run log %s", path)
        return written
