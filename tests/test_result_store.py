from __future__ import annotations

import dataclasses
import json

import pytest

from errors import CorruptStore
from result_store import AGGREGATE_KEYS, BenchmarkRecord, ResultStore, normalize_result


def _quickmark(aggregates: dict, **extra) -> dict:
    doc = {"benchmark_results": {"quick_mark": {"results": {"aggregate_results": aggregates}}}}
    doc.update(extra)
    return doc


def test_normalize_empty_document_uses_defaults() -> None:
    record = normalize_result({}, machine_id=7)
    assert record.machine_id == 7
    assert record.host_id is None
    assert record.score == 0
    assert record.score_metric == "bf16_tflops"
    assert record.measured_at == ""
    assert record.gpu_model == ""
    assert record.gpu_count == 1
    assert record.dlperf_at_benchmark == 0
    assert record.aggregate_results == {key: 0 for key in AGGREGATE_KEYS}
    assert record.source_job_id == ""
    assert record.notes == ""
    assert all(value is not None for key, value in record.to_dict().items() if key != "host_id")


def test_normalize_quickmark_scenario() -> None:
    document = _quickmark({"bf16_tflops": 42.5})
    record = normalize_result(document, machine_id=1)
    assert record.score == 42.5
    assert record.score_metric == "bf16_tflops"
    assert record.aggregate_results["bf16_tflops"] == 42.5
    assert record.aggregate_results["fp32_tflops"] == 0


def test_normalize_full_document() -> None:
    document = _quickmark(
        {
            "bf16_tflops": 160.2,
            "fp16_tflops": 158.0,
            "fp32_tflops": 80.1,
            "mixed_precision_tflops": 150,
            "memory_bandwidth_gbs": 950.5,
            "power_consumption_watts": 430,
            "temperature_centigrade": 61,
        },
        gpu_model="NVIDIA GeForce RTX 4090",
        gpu_count=2,
    )
    document["benchmark_results"]["quick_mark"]["ended_at"] = "2025-03-01T12:00:00Z"

    record = normalize_result(
        document, machine_id=12345, host_id=99, dlperf=88.7, job_id="job-1", notes="test run"
    )

    assert record.to_dict() == {
        "machine_id": 12345,
        "host_id": 99,
        "quickmark_score": 160.2,
        "score_metric": "bf16_tflops",
        "measured_at": "2025-03-01T12:00:00Z",
        "gpu_model": "NVIDIA GeForce RTX 4090",
        "gpu_count": 2,
        "dlperf_at_benchmark": 88.7,
        "notes": "test run",
        "siliconmark_job_id": "job-1",
        "aggregate_results": {
            "bf16_tflops": 160.2,
            "fp16_tflops": 158.0,
            "fp32_tflops": 80.1,
            "mixed_precision_tflops": 150,
            "memory_bandwidth_gbs": 950.5,
            "power_consumption_watts": 430,
            "temperature_centigrade": 61,
        },
    }


def test_normalize_replaces_non_numeric_values() -> None:
    document = _quickmark({"bf16_tflops": "fast", "fp16_tflops": True, "fp32_tflops": None}, gpu_count="2")
    record = normalize_result(document, machine_id=1, dlperf="n/a")
    assert record.score == 0
    assert record.aggregate_results["fp16_tflops"] == 0
    assert record.aggregate_results["fp32_tflops"] == 0
    assert record.gpu_count == 1
    assert record.dlperf_at_benchmark == 0


def test_normalize_configured_score_metric() -> None:
    record = normalize_result(_quickmark({"fp16_tflops": 12.0}), machine_id=1, score_metric="fp16_tflops")
    assert record.score == 12.0
    assert record.score_metric == "fp16_tflops"


def test_normalize_non_dict_document() -> None:
    record = normalize_result(["not", "an", "object"], machine_id=3)
    assert record.gpu_count == 1
    assert record.score == 0


def test_record_is_immutable() -> None:
    record = normalize_result({}, machine_id=1)
    with pytest.raises(dataclasses.FrozenInstanceError):
        record.score = 5


def test_append_creates_store(tmp_path) -> None:
    store = ResultStore(str(tmp_path / "quickmark_results.json"))
    r1 = BenchmarkRecord(machine_id=1, score=1.0)
    r2 = BenchmarkRecord(machine_id=2, score=2.0)

    assert store.append(r1) == 1
    assert store.append(r2) == 2

    entries = json.loads((tmp_path / "quickmark_results.json").read_text())
    assert entries == [r1.to_dict(), r2.to_dict()]


def test_append_preserves_existing_entries(tmp_path) -> None:
    path = tmp_path / "quickmark_results.json"
    r0 = {"machine_id": 0, "quickmark_score": 10, "custom": {"kept": [1, 2, 3]}}
    path.write_text(json.dumps([r0], indent=2))

    store = ResultStore(str(path))
    r1 = BenchmarkRecord(machine_id=1)
    r2 = BenchmarkRecord(machine_id=2)
    store.append(r1)
    store.append(r2)

    assert store.load() == [r0, r1.to_dict(), r2.to_dict()]


def test_extend_accepts_serialized_records(tmp_path) -> None:
    store = ResultStore(str(tmp_path / "results.json"))
    store.extend([{"machine_id": 5}, BenchmarkRecord(machine_id=6)])
    assert [entry["machine_id"] for entry in store.load()] == [5, 6]


def test_load_missing_store_is_empty(tmp_path) -> None:
    assert ResultStore(str(tmp_path / "missing.json")).load() == []


@pytest.mark.parametrize(
    "content",
    [b'{"machine_id": 1}', b"not json", b"", b"\xff\xfe[]", b'[{"gpu_model": "\xff\xfe"}]'],
)
def test_corrupt_store_is_never_overwritten(tmp_path, content) -> None:
    path = tmp_path / "quickmark_results.json"
    path.write_bytes(content)
    store = ResultStore(str(path))

    with pytest.raises(CorruptStore):
        store.append(BenchmarkRecord(machine_id=1))

    assert path.read_bytes() == content
    assert [p.name for p in tmp_path.iterdir()] == ["quickmark_results.json"]
