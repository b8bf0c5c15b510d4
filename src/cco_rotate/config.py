"""Config file loading and auto-discovery for cco-rotate.

Searches for ``cco-rotate.yaml`` in the current directory and parent
directories, parses it, and resolves all relative paths against the
config file's location.
"""

from __future__ import annotations

from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any

import yaml

CONFIG_FILENAME = "cco-rotate.yaml"

_PATH_KEYS = ("kubeconfig", "backup_dir", "report_dir")

_POSITIVE_KEYS = (
    "poll_interval",
    "timeout",
    "confirm_timeout",
    "refresh_timeout",
    "health_timeout",
)

_COUNT_KEYS = ("confirm_attempts", "retry_attempts")


@dataclass(frozen=True)
class RotationConfig:
    """Parsed cco-rotate configuration.  Every field has a usable default."""

    config_path: Path | None = None
    aws_profile: str | None = None
    aws_region: str | None = None
    kubeconfig: str | None = None
    kube_context: str | None = None
    cluster_name: str | None = None
    dry_run: bool = False
    principal_prefix: str = "cco-root-"
    policy_name: str = "cco-root-policy"
    root_secret_namespace: str = "kube-system"
    root_secret_name: str = "aws-creds"
    poll_interval: float = 10.0
    timeout: float = 3600.0
    confirm_attempts: int = 8
    confirm_timeout: float = 300.0
    refresh_timeout: float = 600.0
    health_timeout: float = 1200.0
    retry_attempts: int = 5
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    orphan_key_max_age: float = 0.0
    """Days an inactive, unreferenced key is kept as a rollback target."""
    backup_dir: str = "./backups"
    report_dir: str = "./logs"
    notifications: dict[str, Any] | None = None

    def with_overrides(self, **overrides: Any) -> RotationConfig:
        """Return a copy with every non-None override applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


def find_config(start: Path | None = None) -> Path | None:
    """Walk from *start* (default ``cwd()``) up to the filesystem root.

    Returns the first ``cco-rotate.yaml`` found, or ``None``.
    """
    current = (start or Path.cwd()).resolve()
    while True:
        candidate = current / CONFIG_FILENAME
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            return None
        current = parent


def load_config(
    path: str | Path | None = None,
    *,
    auto_discover: bool = True,
) -> RotationConfig:
    """Load a cco-rotate config file.

    Resolution order:

    1. Explicit *path* (error if it doesn't exist).
    2. Auto-discover by walking parent directories.
    3. Return an empty ``RotationConfig`` (all defaults).
    """
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path).resolve()
        if not config_path.is_file():
            msg = f"Config file not found: {config_path}"
            raise FileNotFoundError(msg)
    elif auto_discover:
        config_path = find_config()

    if config_path is None:
        return RotationConfig()

    return _parse_config(config_path)


def _is_number(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def _parse_config(config_path: Path) -> RotationConfig:
    """Read and parse a YAML config file, resolving relative paths."""
    text = config_path.read_text(encoding="utf-8")
    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as e:
        msg = f"Invalid YAML in {config_path}: {e}"
        raise ValueError(msg) from e

    if not isinstance(data, dict):
        msg = f"Expected a YAML mapping in {config_path}, got {type(data).__name__}"
        raise ValueError(msg)

    known = {f.name for f in fields(RotationConfig)} - {"config_path"}
    unknown = sorted(set(data) - known)
    if unknown:
        msg = f"Unknown keys in {config_path}: {', '.join(unknown)}"
        raise ValueError(msg)

    for key in _POSITIVE_KEYS:
        if key in data and not (_is_number(data[key]) and data[key] > 0):
            msg = f"{key} must be a positive number in {config_path}, got {data[key]!r}"
            raise ValueError(msg)

    for key in _COUNT_KEYS:
        value = data.get(key)
        if key in data and not (_is_number(value) and isinstance(value, int) and value > 0):
            msg = f"{key} must be a positive integer in {config_path}, got {value!r}"
            raise ValueError(msg)

    max_age = data.get("orphan_key_max_age", 0)
    if not (_is_number(max_age) and max_age >= 0):
        msg = (
            f"orphan_key_max_age must be a non-negative number of days in "
            f"{config_path}, got {max_age!r}"
        )
        raise ValueError(msg)

    base = config_path.parent
    for key in _PATH_KEYS:
        if data.get(key) is not None:
            data[key] = str((base / data[key]).resolve())

    return RotationConfig(config_path=config_path, **data)
