"""
Result Extractor
Locates the agent's pretty-printed JSON result among single-line log records.

The SiliconMark agent writes structured logs one JSON object per line, then
prints its final report with the opening brace alone on a line. Other tools
that run earlier in the same stream (driver installers, apt) may also print
standalone braces, so a start line is only accepted when the result key shows
up right after it.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from errors import MalformedResult

RESULT_KEY = "benchmark_results"
COMPLETION_MARKER = "QUICKMARK_BENCHMARK_COMPLETE"
LOOKAHEAD_LINES = 3

logger = logging.getLogger(__name__)


def _is_standalone_brace(line: str) -> bool:
    return line.strip() == "{"


def _find_marker(lines: Sequence[str], marker: Optional[str], start: int = 0) -> Optional[int]:
    if not marker:
        return None
    for i in range(start, len(lines)):
        if marker in lines[i]:
            return i
    return None


def _find_marked_start(lines: Sequence[str], result_key: str, lookahead: int) -> Optional[int]:
    for i, line in enumerate(lines):
        if not _is_standalone_brace(line):
            continue
        for j in range(i + 1, min(i + 1 + lookahead, len(lines))):
            if result_key in lines[j]:
                return i
    return None


def _find_fallback_start(lines: Sequence[str], marker_idx: int) -> Optional[int]:
    # Nearest standalone brace above the completion marker
    for i in range(marker_idx - 1, -1, -1):
        if _is_standalone_brace(lines[i]):
            return i
    return None


def extract_result_json(
    lines: Sequence[str],
    result_key: str = RESULT_KEY,
    end_marker: Optional[str] = COMPLETION_MARKER,
    lookahead: int = LOOKAHEAD_LINES,
    allow_fallback: bool = False
) -> Dict[str, Any]:
    """
    Extract the result object from interleaved log lines.

    Args:
        lines: Output lines, with or without trailing newlines
        result_key: Key that must appear within `lookahead` lines of the opening brace
        end_marker: Sentinel printed after the result; None collects to end of input
        lookahead: Number of lines after the brace searched for `result_key`
        allow_fallback: Accept the nearest standalone brace before the end marker
            when no brace is followed by `result_key`

    Returns:
        Parsed result object

    Raises:
        MalformedResult: No start line found, or the collected text is not a JSON object
    """
    lines = [line.rstrip("\r\n") for line in lines]

    start = _find_marked_start(lines, result_key, lookahead)

    if start is None and allow_fallback:
        marker_idx = _find_marker(lines, end_marker)
        if marker_idx is not None:
            start = _find_fallback_start(lines, marker_idx)
            if start is not None:
                logger.warning(f"No '{result_key}' near any standalone brace, falling back to line {start + 1}")

    if start is None:
        raise MalformedResult(f"No standalone '{{' line followed by '{result_key}' found in output")

    stop = _find_marker(lines, end_marker, start + 1)
    if stop is None:
        stop = len(lines)

    text = "\n".join(lines[start:stop])

    try:
        document = json.loads(text)
    except json.JSONDecodeError as e:
        raise MalformedResult(f"Result block starting at line {start + 1} is not valid JSON: {e}") from e

    if not isinstance(document, dict):
        raise MalformedResult(f"Result block is a {type(document).__name__}, expected an object")

    return document


def save_raw_output(text: str, path: str) -> Path:
    """Write agent output verbatim for offline diagnosis."""
    raw_path = Path(path)
    raw_path.parent.mkdir(parents=True, exist_ok=True)
    with open(raw_path, "w", encoding="utf-8", newline="") as f:
        f.write(text)
    return raw_path


def extract_or_preserve(text: str, raw_output_path: str, **kwargs) -> Dict[str, Any]:
    """
    Run `extract_result_json` over a block of output text.

    On failure the full text is saved to `raw_output_path` before the
    MalformedResult propagates; the exception carries that path.
    """
    lines: List[str] = text.splitlines(keepends=True)
    try:
        return extract_result_json(lines, **kwargs)
    except MalformedResult as e:
        saved = save_raw_output(text, raw_output_path)
        logger.error(f"Could not parse benchmark results, raw output saved to {saved}")
        raise MalformedResult(str(e), raw_output_path=str(saved)) from e
