"""Configuration — optional ``reposync.yaml`` in the workspace root.

Example::

    data_dir: .reposync
    context_lines: 10
    exclude: ["dist/**"]
    critical: ["settings/*.yaml"]
    policy_file: policies/sync.yaml
    skip_binaries: false
    defaults:
      conflict: skip
      critical: skip
      create_dir: proceed
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import yaml

from reposync.errors import SelectionError

CONFIG_FILE = "reposync.yaml"
LOG_FILE = "reposync.log"
SESSIONS_DIR = "sessions"


@dataclass
class Config:
    """Runtime settings. Every field has a working default."""

    data_dir: str = ".reposync"
    context_lines: int = 10
    exclude: list[str] = field(default_factory=list)  # Added to the default excludes
    critical: list[str] = field(default_factory=list)  # Added to the default critical globs
    policy_file: str = ""
    skip_binaries: bool = False
    defaults: dict[str, str] = field(default_factory=dict)  # gate -> proceed | skip | abort

    def data_root(self, root: str | Path) -> Path:
        path = Path(self.data_dir)
        return path if path.is_absolute() else Path(root) / path

    def sessions_dir(self, root: str | Path) -> Path:
        return self.data_root(root) / SESSIONS_DIR

    def log_file(self, root: str | Path) -> Path:
        return self.data_root(root) / LOG_FILE


def load_config(path: str | Path | None = None, root: str | Path = ".") -> Config:
    """Load settings from ``path``, or from ``<root>/reposync.yaml`` if present."""
    if path is None:
        candidate = Path(root) / CONFIG_FILE
        if not candidate.exists():
            return Config()
        path = candidate

    with open(path) as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise SelectionError(f"Config file must contain a mapping: {path}")

    return Config(
        data_dir=str(data.get("data_dir", ".reposync")),
        context_lines=int(data.get("context_lines", 10)),
        exclude=list(data.get("exclude", [])),
        critical=list(data.get("critical", [])),
        policy_file=str(data.get("policy_file", "") or ""),
        skip_binaries=bool(data.get("skip_binaries", False)),
        defaults={str(k): str(v) for k, v in (data.get("defaults") or {}).items()},
    )
