"""
Shared utilities for the fitting pipeline.

Functions provided:
- parse_var_names: interpret a user-provided monitored-parameter list.
- make_run_dir: create the per-run output folder (label or timestamp).
- configure_logging: stream + file logging for a run; close_log_files
  releases the run log when the run ends.
- write_run_manifest: write a manifest.json alongside outputs capturing
  CLI args, resolved inputs, sampler config and flagged parameters.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Tuple

from .sampler import MONITORED, ConfigError

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"


def parse_var_names(spec: str | Iterable[str] | None) -> Tuple[str, ...]:
    """Normalize a monitored-parameter selection.

    Supported forms:
    - None, "" or "all": every monitored parameter
    - comma list: "w_0,z_0,alpha" (``w[]`` style suffixes are accepted)
    """
    if spec is None:
        return MONITORED
    if isinstance(spec, str):
        s = spec.strip()
        if s.lower() in ("", "all"):
            return MONITORED
        parts = [p.strip() for p in s.split(",") if p.strip()]
    else:
        parts = [str(p).strip() for p in spec if str(p).strip()]

    names = tuple(dict.fromkeys(p[:-2] if p.endswith("[]") else p for p in parts))
    unknown = [n for n in names if n not in MONITORED]
    if unknown:
        raise ConfigError(f"Unknown parameter name(s): {unknown}. Allowed: {list(MONITORED)}")
    return names


def make_run_dir(results_dir: Path, run_label: str = "", timestamp: Optional[str] = None) -> Path:
    label = run_label.strip()
    if not label:
        label = f"run_{timestamp or datetime.now().strftime('%Y%m%d_%H%M%S')}"
    run_dir = Path(results_dir) / label
    (run_dir / "figures").mkdir(parents=True, exist_ok=True)
    return run_dir


def configure_logging(log_path: Optional[Path] = None, level: int = logging.INFO) -> None:
    handlers = [logging.StreamHandler()]
    if log_path is not None:
        handlers.append(logging.FileHandler(log_path, mode="w"))
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)


def close_log_files() -> None:
    """Detach and close the root logger's file handlers."""
    root = logging.getLogger()
    for handler in list(root.handlers):
        if isinstance(handler, logging.FileHandler):
            root.removeHandler(handler)
            handler.close()


def write_run_manifest(results_dir: Path, info: Dict[str, Any]) -> Path:
    results_dir = Path(results_dir)
    results_dir.mkdir(parents=True, exist_ok=True)
    out_path = results_dir / "manifest.json"
    with out_path.open("w", encoding="utf-8") as f:
        json.dump(info, f, indent=2, sort_keys=True, default=str)
    return out_path
