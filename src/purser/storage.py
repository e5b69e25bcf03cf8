"""Local file helpers for ledgers and run reports."""

from __future__ import annotations

import json
import os
import re
from pathlib import Path


_SAFE_ID_RE = re.compile(r"[^a-zA-Z0-9._-]")


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    os.chmod(path, 0o700)


def ensure_private_file(path: Path) -> None:
    if not path.exists():
        path.touch()
    os.chmod(path, 0o600)


def run_report_path(base_dir: Path, run_id: str) -> Path:
    """Build `<base_dir>/<run_id>.json`, rejecting ids that escape base_dir."""
    safe_name = _SAFE_ID_RE.sub("_", run_id)
    path = (base_dir / f"{safe_name}.json").resolve()
    if path.parent != base_dir.resolve():
        raise ValueError(f"Unsafe path for run id: {run_id}")
    return path


def write_run_report(base_dir: Path, run_id: str, payload: dict) -> Path:
    ensure_private_dir(base_dir)
    path = run_report_path(base_dir, run_id)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, default=str)
    ensure_private_file(path)
    return path
