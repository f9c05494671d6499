"""
Helpers shared by the CLI and the web UI: run identity hashing, JSON-safe
parameter snapshots, run folders and artifact packaging.
"""

from __future__ import annotations

import dataclasses
import datetime as _dt
import hashlib
import json
import logging
import os
import threading
import time
import zipfile
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable

import numpy as np

logger = logging.getLogger(__name__)

SHORT_HASH_LEN = 8


def normalize_abs_posix(path: str | Path) -> str:
    """Resolved absolute path with forward slashes, so hashes match across platforms."""
    return Path(path).resolve().as_posix()


# -------------------------
# Run identity
# -------------------------
def canonical_json_dumps(payload: dict[str, Any]) -> str:
    """Compact, key-sorted JSON; two equal payloads always serialize identically."""
    return json.dumps(
        payload, ensure_ascii=False, separators=(",", ":"), sort_keys=True
    )


def canonical_json_hash(payload: dict[str, Any]) -> tuple[str, str]:
    """SHA-256 of the canonical JSON as (short prefix, full hex digest)."""
    digest = hashlib.sha256(canonical_json_dumps(payload).encode("utf-8")).hexdigest()
    return digest[:SHORT_HASH_LEN], digest


def sanitize_for_json(obj: Any) -> Any:
    """
    Reduce parameter objects to JSON primitives.

    Flags and enums become member names (composite flags '|'-joined), paths become
    absolute POSIX strings, dataclasses become dicts, numpy values become Python
    numbers or lists. Anything unrecognized falls back to str().
    """
    if obj is None or isinstance(obj, (bool, str)):
        return obj
    # Enum before int: IntFlag members are ints too
    if isinstance(obj, Enum):
        if obj.name is not None:
            return obj.name
        return "|".join(m.name for m in type(obj) if m.value and m in obj)
    if isinstance(obj, (int, float)):
        return obj
    if isinstance(obj, np.generic):
        return obj.item()
    if isinstance(obj, np.ndarray):
        return [sanitize_for_json(x) for x in obj.tolist()]
    if isinstance(obj, Path):
        return normalize_abs_posix(obj)
    if isinstance(obj, (_dt.datetime, _dt.date)):
        return obj.isoformat()
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return {
            f.name: sanitize_for_json(getattr(obj, f.name))
            for f in dataclasses.fields(obj)
        }
    if isinstance(obj, dict):
        return {str(k): sanitize_for_json(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set, frozenset)):
        return [sanitize_for_json(x) for x in obj]
    return str(obj)


def build_effective_parameters(load: Any, analysis: Any) -> dict[str, Any]:
    """{"load": ..., "analysis": ...} snapshot used in the manifest and the run hash."""
    return {
        "load": sanitize_for_json(load),
        "analysis": sanitize_for_json(analysis),
    }


def write_manifest(path: str | Path, manifest: Dict[str, Any]) -> None:
    Path(path).write_text(
        json.dumps(manifest, ensure_ascii=False, indent=2), encoding="utf-8"
    )


def utc_timestamp_seconds() -> str:
    """Current UTC time as 'YYYY-mm-ddTHH:MM:SSZ'."""
    now = _dt.datetime.now(_dt.timezone.utc).replace(tzinfo=None)
    return now.isoformat(timespec="seconds") + "Z"


# -------------------------
# Run folders and artifacts
# -------------------------
def ensure_run_dir(root: Path | str = "output") -> Path:
    """
    Create a fresh `root`/<YYYYmmddTHHMMSS> folder for one run.

    A second run started within the same second gets a '-1', '-2', ... suffix so
    runs never share a folder.
    """
    stamp = time.strftime("%Y%m%dT%H%M%S", time.localtime())
    base = Path(root)
    base.mkdir(parents=True, exist_ok=True)
    candidate = base / stamp
    n = 0
    while True:
        try:
            candidate.mkdir()
            break
        except FileExistsError:
            n += 1
            candidate = base / f"{stamp}-{n}"
    logger.debug("Created run folder %s", candidate)
    return candidate


def write_text_report(
    report_text: str, run_dir: Path, short_hash: str, suffix: str = "txt"
) -> Path:
    target = Path(run_dir) / f"report-{short_hash}.{suffix}"
    target.write_text(report_text, encoding="utf-8")
    logger.debug("Wrote %s", target)
    return target


def _write_zip(zip_path: Path, members: list[Path]) -> None:
    # Written under a temporary name and renamed, so a reader never sees a partial archive
    partial = zip_path.with_name(zip_path.name + ".part")
    with zipfile.ZipFile(partial, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for member in members:
            if member.exists():
                zf.write(member, arcname=member.name)
            else:
                logger.debug("Not in archive (missing): %s", member)
    os.replace(partial, zip_path)


def create_zip_async(
    zip_path: str | Path, artifact_paths: Iterable[str | Path]
) -> threading.Thread:
    """
    Package the run artifacts into `zip_path` on a daemon thread and return the
    started thread. Errors are logged, never raised to the caller.
    """
    target = Path(zip_path)
    members = [Path(p) for p in artifact_paths]

    def _worker() -> None:
        try:
            _write_zip(target, members)
            logger.debug("Archive ready: %s (%d files)", target, len(members))
        except OSError as e:
            logger.warning("Could not build archive %s: %s", target, e)

    thread = threading.Thread(target=_worker, name="artifact-zip", daemon=True)
    thread.start()
    return thread
