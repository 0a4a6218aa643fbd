"""
Structured JSONL logging for pipeline scripts.

One JSONL file per script run under logs/. Each record carries
script_name, run_id, level and message; structured payloads (config,
inputs/outputs, join stats, neighbour-graph summaries, stage outcomes)
go under "extra". Messages are echoed to stdout as plain text.
"""

import importlib
import json
import logging
import sys
import traceback
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from school_atlas.paths import LOGS_DIR

STACK = ("geopandas", "shapely", "pyproj", "pandas", "numpy", "scipy", "statsmodels")

CONSOLE_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"


def generate_run_id() -> str:
    """UTC timestamp plus a short random suffix, e.g. 20250101_120000_1a2b3c4d."""
    return f"{datetime.now(timezone.utc):%Y%m%d_%H%M%S}_{uuid.uuid4().hex[:8]}"


def get_versions() -> dict[str, str]:
    """Python and analysis-library versions, for run provenance."""
    versions = {"python": sys.version.split()[0]}
    for name in STACK:
        try:
            module = importlib.import_module(name)
        except ImportError:
            versions[name] = "not installed"
            continue
        versions[name] = getattr(module, "__version__", "unknown")
    return versions


class JSONLLogger:
    """
    Per-run JSONL logger, used as a context manager.

        with JSONLLogger("02_global_morans_i") as logger:
            logger.log_graph("mukim", graph.summary())
            logger.log_outcome("global_moran_mukim", outcome)

    An exception escaping the block is recorded before the file is closed.
    """

    def __init__(
        self,
        script_name: str,
        run_id: Optional[str] = None,
        log_dir: Optional[Path] = None,
    ):
        self.script_name = script_name
        self.run_id = run_id or generate_run_id()

        log_dir = Path(log_dir) if log_dir is not None else LOGS_DIR
        log_dir.mkdir(parents=True, exist_ok=True)
        self.log_file = log_dir / f"{script_name}_{self.run_id}.jsonl"
        self._fh = open(self.log_file, "a", encoding="utf-8")

        self._console = logging.StreamHandler(sys.stdout)
        self._console.setLevel(logging.INFO)
        self._console.setFormatter(logging.Formatter(CONSOLE_FORMAT))
        self._logger = logging.getLogger(f"school_atlas.{script_name}")
        self._logger.setLevel(logging.DEBUG)
        self._logger.addHandler(self._console)

        self._record("INFO", "Logger initialized", {
            "log_file": str(self.log_file),
            "versions": get_versions(),
        })

    # -------------------------------------------------------------------------
    # Core
    # -------------------------------------------------------------------------

    def _record(self, level: str, message: str, extra: Optional[dict] = None) -> None:
        """Append one record to the JSONL file only."""
        record = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "script_name": self.script_name,
            "run_id": self.run_id,
            "level": level,
            "message": message,
        }
        if extra:
            record["extra"] = extra
        self._fh.write(json.dumps(record, default=str) + "\n")
        self._fh.flush()

    def _emit(self, level: str, message: str, extra: Optional[dict] = None) -> None:
        """Append to the JSONL file and echo to the console."""
        self._record(level, message, extra)
        self._logger.log(logging.getLevelName(level), message)

    def debug(self, message: str, extra: Optional[dict] = None) -> None:
        self._emit("DEBUG", message, extra)

    def info(self, message: str, extra: Optional[dict] = None) -> None:
        self._emit("INFO", message, extra)

    def warning(self, message: str, extra: Optional[dict] = None) -> None:
        self._emit("WARNING", message, extra)

    def error(self, message: str, extra: Optional[dict] = None) -> None:
        self._emit("ERROR", message, extra)

    # -------------------------------------------------------------------------
    # Structured payloads (file only)
    # -------------------------------------------------------------------------

    def log_config(self, config: dict[str, Any], config_digest: Optional[str] = None) -> None:
        self._record("INFO", "Configuration loaded", {
            "config": config,
            "config_digest": config_digest,
        })

    def log_inputs(self, inputs: dict[str, str]) -> None:
        self._record("INFO", "Inputs registered", {"inputs": inputs})

    def log_outputs(self, outputs: dict[str, str]) -> None:
        self._record("INFO", "Outputs registered", {"outputs": outputs})

    def log_metrics(self, metrics: dict[str, Any]) -> None:
        self._record("INFO", "Metrics recorded", {"metrics": metrics})

    def log_join_stats(self, join_stats: dict[str, Any]) -> None:
        self._record("INFO", "Join stats recorded", {"join_stats": join_stats})

    # -------------------------------------------------------------------------
    # Analysis events
    # -------------------------------------------------------------------------

    def log_graph(self, label: str, summary: dict[str, Any]) -> None:
        """Record a neighbour-graph summary; regions without neighbours are warned about."""
        self._record("INFO", f"{label}: neighbour graph", {"graph": summary})
        islands = list(summary.get("islands", ()))
        if islands:
            shown = ", ".join(islands[:10]) + (" ..." if len(islands) > 10 else "")
            self._emit("WARNING", f"{label}: {len(islands)} region(s) without neighbours: {shown}")

    def log_outcome(self, stage: str, outcome: Any) -> None:
        """Record whether a stage produced a value or why it did not."""
        if outcome.ok:
            self._record("INFO", f"Stage {stage}: ok", {"stage": stage, "ok": True})
            return
        self._record("WARNING", f"Stage {stage}: failed", {
            "stage": stage,
            "ok": False,
            "error_type": outcome.error_type,
            "reason": outcome.reason,
        })
        self._logger.warning(f"Stage {stage} failed ({outcome.error_type}): {outcome.reason}")

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        self._record("INFO", "Logger closing")
        self._fh.close()
        self._logger.removeHandler(self._console)

    def __enter__(self) -> "JSONLLogger":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if exc_type is not None:
            self.error(
                f"Exception occurred: {exc_type.__name__}: {exc_val}",
                extra={"traceback": "".join(traceback.format_tb(exc_tb))},
            )
        self.close()


def get_logger(script_name: str, run_id: Optional[str] = None) -> JSONLLogger:
    """JSONL logger writing to the canonical logs/ directory."""
    return JSONLLogger(script_name=script_name, run_id=run_id)
