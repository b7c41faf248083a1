"""Configuration management for capacity-finder."""

import os
from pathlib import Path
from typing import Optional, Dict, Any, List


DEFAULT_LEVELS = "10,20,30,40,50"


def load_env_file(env_path: Optional[Path] = None) -> Dict[str, str]:
    """Load environment variables from .env file."""
    if env_path is None:
        # Look for .env in current directory, then in package directory
        candidates = [
            Path.cwd() / ".env",
            Path(__file__).parent.parent / ".env",
        ]

        for candidate in candidates:
            if candidate.exists():
                env_path = candidate
                break

    env_vars = {}

    if env_path and env_path.exists():
        with open(env_path, 'r', encoding='utf-8') as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith('#'):
                    if '=' in line:
                        key, value = line.split('=', 1)
                        env_vars[key.strip()] = value.strip()

    return env_vars


def parse_levels(value: str) -> List[int]:
    """Parse a comma separated concurrency list such as '10,20,30'."""
    levels = []
    for part in value.split(','):
        part = part.strip()
        if not part:
            continue
        try:
            levels.append(int(part))
        except ValueError:
            raise ValueError(f"invalid concurrency level: {part!r}")
    return levels


def generate_levels(start: int, maximum: int, increment: int) -> List[int]:
    """Arithmetic level sequence start, start+increment, ... up to maximum."""
    if start < 1 or increment < 1:
        raise ValueError(f"start and increment must be positive (start={start}, increment={increment})")
    if maximum < start:
        raise ValueError(f"max {maximum} is below start {start}")
    return list(range(start, maximum + 1, increment))


def get_config(env_path: Optional[Path] = None) -> Dict[str, Any]:
    """Get configuration from environment variables and .env file."""
    env_vars = load_env_file(env_path)

    def _get(key: str, env_name: str, default: str) -> str:
        return env_vars.get(key, os.getenv(env_name, default))

    lifetime = float(_get('worker_max_lifetime', 'WORKER_MAX_LIFETIME', '300'))

    config = {
        'output_root': Path(_get('output_root', 'OUTPUT_ROOT', '.')),
        'levels': parse_levels(_get('levels', 'LEVELS', DEFAULT_LEVELS)),
        'target_duration': float(_get('target_duration', 'TARGET_DURATION', '45')),
        'grace_period': float(_get('grace_period', 'GRACE_PERIOD', '10')),
        'cooldown': float(_get('cooldown', 'COOLDOWN', '15')),
        'sample_interval': float(_get('sample_interval', 'SAMPLE_INTERVAL', '1.0')),
        'high_success': float(_get('high_success', 'HIGH_SUCCESS', '90.0')),
        'low_success': float(_get('low_success', 'LOW_SUCCESS', '50.0')),
        'pool_capacity': int(_get('pool_capacity', 'POOL_CAPACITY', '200')),
        # 0 disables worker recycling
        'worker_max_lifetime': lifetime if lifetime > 0 else None,
        'debug': _get('debug', 'DEBUG', 'false').lower() in ('true', '1', 'yes'),
    }

    return config
