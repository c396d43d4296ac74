from __future__ import annotations

import json

import pytest

from errors import MalformedResult
from result_extractor import extract_or_preserve, extract_result_json


AGENT_LOG = (
    '{"time":"t1","level":"INFO","msg":"starting quick_mark"}\n'
    '{\n'
    '  "benchmark_results":{"quick_mark":{"results":{"aggregate_results":{"bf16_tflops":42.5}}}}\n'
    '}\n'
    'QUICKMARK_BENCHMARK_COMPLETE\n'
)


def test_extracts_marked_result_object() -> None:
    document = extract_result_json(AGENT_LOG.splitlines(keepends=True))
    aggregates = document["benchmark_results"]["quick_mark"]["results"]["aggregate_results"]
    assert aggregates == {"bf16_tflops": 42.5}


def test_result_matches_reserialized_object() -> None:
    expected = {
        "benchmark_results": {"quick_mark": {"ended_at": "2025-01-01T00:00:00Z"}},
        "gpu_model": "RTX 4090",
        "gpu_count": 2,
    }
    pretty = json.dumps(expected, indent=2)
    lines = ['{"level":"INFO","msg":"hello"}'] + pretty.splitlines() + ["=== QUICKMARK_BENCHMARK_COMPLETE ==="]
    document = extract_result_json(lines)
    assert json.dumps(document, sort_keys=True) == json.dumps(expected, sort_keys=True)


def test_skips_standalone_brace_without_result_key() -> None:
    lines = [
        "+ nvidia-smi --query",
        "{",
        '  "driver": "550.1",',
        '  "cuda": "12.4"',
        "}",
        '{"level":"INFO","msg":"running"}',
        "{",
        '  "benchmark_results": {},',
        '  "gpu_model": "H100"',
        "}",
        "=== QUICKMARK_BENCHMARK_COMPLETE ===",
    ]
    document = extract_result_json(lines)
    assert document == {"benchmark_results": {}, "gpu_model": "H100"}


def test_result_key_beyond_lookahead_is_not_matched() -> None:
    lines = ["{", '  "a": 1,', '  "b": 2,', '  "c": 3,', '  "benchmark_results": {}', "}"]
    with pytest.raises(MalformedResult):
        extract_result_json(lines, end_marker=None)
    assert extract_result_json(lines, end_marker=None, lookahead=4)["a"] == 1


def test_collects_to_end_without_marker() -> None:
    lines = ['{"level":"INFO"}', "{", '  "benchmark_results": {"x": 1}', "}"]
    assert extract_result_json(lines, end_marker=None) == {"benchmark_results": {"x": 1}}


def test_marker_trace_line_stops_collection() -> None:
    lines = [
        "{",
        '  "benchmark_results": {}',
        "}",
        "+ echo '=== QUICKMARK_BENCHMARK_COMPLETE ==='",
        "=== QUICKMARK_BENCHMARK_COMPLETE ===",
    ]
    assert extract_result_json(lines) == {"benchmark_results": {}}


def test_unmarked_brace_rejected_unless_fallback_enabled() -> None:
    lines = [
        "{",
        '  "unrelated": true',
        "}",
        "{",
        '  "results": {"quick_mark": {}}',
        "}",
        "=== QUICKMARK_BENCHMARK_COMPLETE ===",
    ]
    with pytest.raises(MalformedResult):
        extract_result_json(lines)

    # nearest brace above the marker
    assert extract_result_json(lines, allow_fallback=True) == {"results": {"quick_mark": {}}}


def test_fallback_needs_completion_marker() -> None:
    lines = ["{", '  "unrelated": true', "}"]
    with pytest.raises(MalformedResult):
        extract_result_json(lines, allow_fallback=True)


def test_invalid_json_raises_malformed_result() -> None:
    lines = ["{", '  "benchmark_results": {', "QUICKMARK_BENCHMARK_COMPLETE"]
    with pytest.raises(MalformedResult, match="not valid JSON"):
        extract_result_json(lines)


def test_no_standalone_brace_preserves_raw_output(tmp_path) -> None:
    raw = '{"time":"t1","level":"INFO"}\r\nagent crashed\n\n{"level":"ERROR"}\n'
    raw_path = tmp_path / "debug" / "siliconmark_raw_output.txt"

    with pytest.raises(MalformedResult) as excinfo:
        extract_or_preserve(raw, str(raw_path))

    assert excinfo.value.raw_output_path == str(raw_path)
    assert raw_path.read_bytes() == raw.encode("utf-8")


def test_extract_or_preserve_success_writes_nothing(tmp_path) -> None:
    raw_path = tmp_path / "raw.txt"
    document = extract_or_preserve(AGENT_LOG, str(raw_path))
    assert "benchmark_results" in document
    assert not raw_path.exists()
