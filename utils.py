"""
Utility Functions
Common utilities for configuration, logging, and formatting.
"""

import os
import re
import copy
import logging
from typing import Dict, Any, List, Optional
from pathlib import Path

import yaml


DEFAULT_CONFIG: Dict[str, Any] = {
    'siliconmark': {
        'api_base': 'https://api.silicondata.com',
        'login_path': '/api/user/login',
        'jobs_path': '/api/silicon-mark/v1/jobs',
        'benchmarks': ['quick_mark'],
        'node_count': 1,
        'agent_url': 'https://downloads.silicondata.com/agent',
        'request_timeout': 30,
    },
    'vast': {
        'image': 'vastai/pytorch',
        'disk_space': 20,
        'label_prefix': 'quickmark-',
        'ready_timeout': 300,
        'ready_poll_interval': 10,
        'setup_timeout': 300,
        'setup_poll_interval': 5,
        'benchmark_timeout': 900,
        'benchmark_poll_interval': 10,
    },
    'extraction': {
        'result_key': 'benchmark_results',
        'completion_marker': 'QUICKMARK_BENCHMARK_COMPLETE',
        'setup_marker': 'Setup Complete',
        'lookahead_lines': 3,
        'allow_unmarked_fallback': False,
    },
    'results': {
        'file': 'quickmark_results.json',
        'raw_output': 'siliconmark_raw_output.txt',
        'score_metric': 'bf16_tflops',
    },
    'parallel': {
        'status_interval': 5,
        'log_dir': 'quickmark_logs',
    },
    'logging': {
        'level': 'INFO',
        'file': 'quickmark.log',
    },
}

_ANSI_RE = re.compile(r'\x1b\[[0-9;]*[A-Za-z]')


def setup_logging(level: str = "INFO", log_file: Optional[str] = "quickmark.log", stream: bool = True):
    """
    Setup logging configuration.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_file: Path to log file, or None to skip file logging
        stream: Also log to stderr (disable while a live status table owns the terminal)
    """
    handlers: List[logging.Handler] = []

    if log_file:
        # Create logs directory if it doesn't exist
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    if stream:
        handlers.append(logging.StreamHandler())

    if not handlers:
        handlers.append(logging.NullHandler())

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, level),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True
    )

    # Reduce noise from external libraries
    logging.getLogger('urllib3').setLevel(logging.WARNING)
    logging.getLogger('paramiko').setLevel(logging.WARNING)


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def substitute_env_vars(obj):
    """Replace "${VAR}" string values with the environment value (left as-is if unset)"""
    if isinstance(obj, str):
        if obj.startswith('${') and obj.endswith('}'):
            env_var = obj[2:-1]
            return os.getenv(env_var, obj)
        return obj
    elif isinstance(obj, dict):
        return {k: substitute_env_vars(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [substitute_env_vars(item) for item in obj]
    return obj


def load_config(config_path: Optional[str] = "config.yaml") -> Dict[str, Any]:
    """
    Load configuration from YAML on top of the built-in defaults.

    A missing file is not an error; the defaults are used as-is.

    Args:
        config_path: Path to configuration file

    Returns:
        Merged configuration dictionary
    """
    config = copy.deepcopy(DEFAULT_CONFIG)

    if config_path and Path(config_path).exists():
        with open(config_path) as f:
            file_config = yaml.safe_load(f) or {}
        if not isinstance(file_config, dict):
            raise ValueError(f"Configuration file {config_path} must contain a mapping")
        config = _deep_merge(config, substitute_env_vars(file_config))

    interval = os.getenv('STATUS_INTERVAL')
    if interval:
        config['parallel']['status_interval'] = float(interval)

    return config


def get_vast_api_key() -> Optional[str]:
    """Return VAST_API_KEY, falling back to the key saved by `vast set api-key`"""
    api_key = os.getenv('VAST_API_KEY')
    if api_key:
        return api_key.strip()

    key_file = Path('~/.vast_api_key').expanduser()
    if key_file.exists():
        return key_file.read_text().strip() or None

    return None


def validate_config(config: Dict[str, Any], require_vast: bool = True) -> bool:
    """
    Validate configuration dictionary and required credentials.

    Args:
        config: Configuration dictionary
        require_vast: Also require a Vast.ai API key

    Returns:
        bool: True if valid, False otherwise
    """
    required_sections = ['siliconmark', 'vast', 'extraction', 'results']

    for section in required_sections:
        if section not in config:
            logging.error(f"Missing required configuration section: {section}")
            return False

    # Validate SiliconMark config
    siliconmark_required = ['api_base', 'login_path', 'jobs_path', 'agent_url']
    for key in siliconmark_required:
        if key not in config['siliconmark']:
            logging.error(f"Missing required siliconmark configuration: {key}")
            return False

    # Validate Vast.ai config
    vast_required = ['image', 'disk_space', 'ready_timeout', 'benchmark_timeout']
    for key in vast_required:
        if key not in config['vast']:
            logging.error(f"Missing required vast configuration: {key}")
            return False

    # Validate environment variables
    for var in ['SD_EMAIL', 'SD_PASSWORD']:
        if not os.getenv(var):
            logging.error(f"Missing required environment variable: {var}")
            return False

    if require_vast and not get_vast_api_key():
        logging.error("No Vast.ai API key found. Set VAST_API_KEY or run 'vast set api-key YOUR_KEY'")
        return False

    return True


def format_duration(seconds: float) -> str:
    """
    Format duration in seconds using its two largest units.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted string (e.g., "45s", "3m 12s", "1h 23m")
    """
    seconds = max(0, int(seconds))
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m {seconds % 60}s"
    return f"{seconds // 3600}h {(seconds % 3600) // 60}m"


def strip_ansi(text: str) -> str:
    """Remove ANSI escape sequences and carriage returns."""
    return _ANSI_RE.sub('', text).replace('\r', '')


def last_log_line(log_file: Path, width: int = 60, tail_bytes: int = 4096) -> str:
    """
    Return the last non-empty line of a log file, cleaned for display.

    Args:
        log_file: Log file path
        width: Maximum characters returned
        tail_bytes: How much of the file end to inspect

    Returns:
        Cleaned line, or "" if the file is missing or empty
    """
    try:
        with open(log_file, 'rb') as f:
            f.seek(0, os.SEEK_END)
            size = f.tell()
            f.seek(max(0, size - tail_bytes))
            data = f.read().decode('utf-8', errors='replace')
    except OSError:
        return ""

    for line in reversed(strip_ansi(data).split('\n')):
        if line.strip():
            return line.strip()[:width]
    return ""


def parse_machine_ids(raw: str) -> List[int]:
    """
    Parse comma and/or whitespace separated machine IDs.

    Raises:
        ValueError: A token is not a positive integer
    """
    machine_ids = []
    for part in re.split(r'[\s,]+', raw or ''):
        if not part:
            continue
        if not re.fullmatch(r'[0-9]+', part):
            raise ValueError(f"Invalid machine ID: {part} (must be numeric)")
        machine_ids.append(int(part))
    return machine_ids
