"""
Result Store
Normalizes SiliconMark QuickMark results and appends them to a JSON array file.
"""

import json
import os
import tempfile
import threading
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

from errors import CorruptStore

AGGREGATE_KEYS = (
    "bf16_tflops",
    "fp16_tflops",
    "fp32_tflops",
    "mixed_precision_tflops",
    "memory_bandwidth_gbs",
    "power_consumption_watts",
    "temperature_centigrade",
)

DEFAULT_SCORE_METRIC = "bf16_tflops"

QUICKMARK_PATH = ("benchmark_results", "quick_mark")
AGGREGATE_PATH = QUICKMARK_PATH + ("results", "aggregate_results")


@dataclass(frozen=True)
class BenchmarkRecord:
    """One completed QuickMark run"""
    machine_id: int
    host_id: Optional[int] = None
    score: float = 0
    score_metric: str = DEFAULT_SCORE_METRIC
    measured_at: str = ""
    gpu_model: str = ""
    gpu_count: int = 1
    dlperf_at_benchmark: float = 0
    aggregate_results: Dict[str, float] = field(default_factory=lambda: {k: 0 for k in AGGREGATE_KEYS})
    source_job_id: str = ""
    notes: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """Serialize using the field names of quickmark_results.json"""
        return {
            'machine_id': self.machine_id,
            'host_id': self.host_id,
            'quickmark_score': self.score,
            'score_metric': self.score_metric,
            'measured_at': self.measured_at,
            'gpu_model': self.gpu_model,
            'gpu_count': self.gpu_count,
            'dlperf_at_benchmark': self.dlperf_at_benchmark,
            'notes': self.notes,
            'siliconmark_job_id': self.source_job_id,
            'aggregate_results': dict(self.aggregate_results),
        }


def _lookup(document: Any, path: Sequence[str]) -> Any:
    node = document
    for key in path:
        if not isinstance(node, dict) or key not in node:
            return None
        node = node[key]
    return node


def _number(value: Any, default: float = 0) -> float:
    # bool is an int subclass but never a measurement
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return value


def _string(value: Any) -> str:
    return value if isinstance(value, str) else ""


def normalize_result(
    document: Any,
    machine_id: int,
    host_id: Optional[int] = None,
    dlperf: Any = 0,
    job_id: str = "",
    notes: str = "",
    score_metric: str = DEFAULT_SCORE_METRIC
) -> BenchmarkRecord:
    """
    Map a parsed QuickMark result onto a BenchmarkRecord.

    Missing or mistyped values degrade to defaults (0, "" or a single GPU);
    a partial result is still a usable data point.

    Args:
        document: Parsed agent result (may be partial)
        machine_id: Vast.ai machine ID that was benchmarked
        host_id: Vast.ai host owning the machine, if known
        dlperf: Marketplace DLPerf estimate captured at rental time
        job_id: SiliconMark job ID
        notes: Free-form provenance text
        score_metric: Aggregate key used as the headline score

    Returns:
        BenchmarkRecord
    """
    if not isinstance(document, dict):
        document = {}

    aggregates = {key: _number(_lookup(document, AGGREGATE_PATH + (key,))) for key in AGGREGATE_KEYS}

    gpu_count = document.get('gpu_count')
    if isinstance(gpu_count, bool) or not isinstance(gpu_count, int):
        gpu_count = 1

    return BenchmarkRecord(
        machine_id=machine_id,
        host_id=host_id if isinstance(host_id, int) and not isinstance(host_id, bool) else None,
        score=aggregates.get(score_metric, 0),
        score_metric=score_metric,
        measured_at=_string(_lookup(document, QUICKMARK_PATH + ("ended_at",))),
        gpu_model=_string(document.get('gpu_model')),
        gpu_count=gpu_count,
        dlperf_at_benchmark=_number(dlperf),
        aggregate_results=aggregates,
        source_job_id=job_id or "",
        notes=notes or "",
    )


class ResultStore:
    """Append-only JSON array of benchmark records"""

    def __init__(self, path: str, logger: Optional[logging.Logger] = None):
        """
        Initialize result store.

        Args:
            path: Location of the JSON array file
            logger: Optional logger
        """
        self.path = Path(path)
        self.logger = logger or logging.getLogger(__name__)
        self._lock = threading.Lock()

    def load(self) -> List[Any]:
        """
        Read all stored entries.

        Returns:
            List of entries, empty if the file does not exist yet

        Raises:
            CorruptStore: File is unreadable JSON or not an array
        """
        if not self.path.exists():
            return []

        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                entries = json.load(f)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise CorruptStore(str(self.path), f"invalid JSON ({e})") from e

        if not isinstance(entries, list):
            raise CorruptStore(str(self.path), f"top level is {type(entries).__name__}, expected array")

        return entries

    def append(self, record: BenchmarkRecord) -> int:
        """Append one record; returns the new entry count."""
        return self.extend([record])

    def extend(self, records: Iterable[Any]) -> int:
        """
        Append records in order.

        Accepts BenchmarkRecord objects or already-serialized dicts (as read
        back from a per-attempt store).

        Returns:
            Number of entries in the store after the write
        """
        new_entries = [r.to_dict() if isinstance(r, BenchmarkRecord) else r for r in records]

        with self._lock:
            entries = self.load()
            entries.extend(new_entries)
            self._write(entries)

        self.logger.info(f"Appended {len(new_entries)} record(s) to {self.path} ({len(entries)} total)")
        return len(entries)

    def _write(self, entries: List[Any]):
        """Replace the file atomically so a failed write never truncates it"""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(entries, f, indent=2)
                f.write("\n")
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
