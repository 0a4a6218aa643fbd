"""
Provenance sidecars for reproducible outputs.

Each canonical output gets `<stem>_metadata.json` in METADATA_DIR with the
input file hashes, config digest, git commit, library versions, run id and
any statistic summaries the script wants to pin.
"""

import hashlib
import json
import subprocess
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union

from school_atlas.io_utils import atomic_write_json, read_json
from school_atlas.logging_utils import get_versions
from school_atlas.paths import METADATA_DIR, PROJECT_ROOT


def hash_file(path: Union[str, Path], algorithm: str = "sha256") -> str:
    """Hex digest of a file, read in chunks."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Cannot hash non-existent file: {path}")

    h = hashlib.new(algorithm)
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            h.update(chunk)
    return h.hexdigest()


def hash_dict(d: Dict[str, Any], algorithm: str = "sha256") -> str:
    """Digest of a dict's sorted-key JSON serialization."""
    h = hashlib.new(algorithm)
    h.update(json.dumps(d, sort_keys=True, default=str).encode("utf-8"))
    return h.hexdigest()


def get_git_commit() -> Optional[str]:
    """Current commit hash, or None outside a git checkout."""
    try:
        result = subprocess.run(
            ["git", "rev-parse", "HEAD"],
            capture_output=True,
            text=True,
            timeout=5,
            cwd=PROJECT_ROOT,
        )
    except (subprocess.TimeoutExpired, FileNotFoundError):
        return None
    return result.stdout.strip() if result.returncode == 0 else None


def sidecar_path_for(output_path: Union[str, Path], metadata_dir: Optional[Path] = None) -> Path:
    """Location of the metadata sidecar for an output file."""
    return (metadata_dir or METADATA_DIR) / f"{Path(output_path).stem}_metadata.json"


def create_metadata_sidecar(
    output_path: Union[str, Path],
    inputs: Dict[str, str],
    config: Dict[str, Any],
    run_id: str,
    extra: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Build the metadata dict for an output (missing inputs are flagged, not fatal)."""
    input_hashes = {}
    for name, path in inputs.items():
        path = Path(path)
        input_hashes[name] = {
            "path": str(path),
            "hash": hash_file(path) if path.exists() else None,
        }
        if not path.exists():
            input_hashes[name]["missing"] = True

    metadata = {
        "output_file": str(output_path),
        "run_id": run_id,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "inputs": input_hashes,
        "config_digest": hash_dict(config),
        "git_commit": get_git_commit(),
        "versions": get_versions(),
    }
    if extra:
        metadata["extra"] = extra
    return metadata


def write_metadata_sidecar(
    output_path: Union[str, Path],
    inputs: Dict[str, str],
    config: Dict[str, Any],
    run_id: str,
    extra: Optional[Dict[str, Any]] = None,
    metadata_dir: Optional[Path] = None,
) -> Path:
    """Write the sidecar next to the other metadata and return its path."""
    metadata = create_metadata_sidecar(output_path, inputs, config, run_id, extra)
    sidecar_path = sidecar_path_for(output_path, metadata_dir)
    atomic_write_json(metadata, sidecar_path)
    return sidecar_path


def read_metadata_sidecar(
    output_path: Union[str, Path],
    metadata_dir: Optional[Path] = None,
) -> Optional[Dict[str, Any]]:
    """Read an output's sidecar, or None if it has not been written."""
    sidecar_path = sidecar_path_for(output_path, metadata_dir)
    if sidecar_path.exists():
        return read_json(sidecar_path)
    return None
