"""
Persistent record of the current run.

``start`` returns while the nodes keep running, so ``stop``, ``dump-logs`` and
``clean`` typically run in a different process. They find the run through the
data directory::

    <data_dir>/
        current                 # id of the current run
        runs/<run_id>/
            run.json            # this record
            genesis/            # genesis artifacts and keys
            nodes/<node_id>/    # node data directories
            logs/<node_id>.log  # node output
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from pydantic import ValidationError

from local_testnet.exceptions import RecordUnreadable
from local_testnet.process import HealthState
from local_testnet.topology import Topology
from local_testnet.types import CamelModel

from .states import LifecycleState

logger = logging.getLogger(__name__)

RUN_RECORD_NAME = "run.json"
"""File name of the record inside the run directory."""

RUNS_DIR_NAME = "runs"
"""Directory holding one directory per run."""

CURRENT_POINTER_NAME = "current"
"""File naming the current run."""


class NodeRecord(CamelModel):
    """Process of one launched node."""

    pid: int
    """Process id, also the process group id."""

    create_time: float
    """Process create time, to recognize pid reuse."""

    state: HealthState
    """Last known health."""

    reason: str | None = None
    """Why the node failed, if it did."""


class RunRecord(CamelModel):
    """Everything another process needs to operate on a run."""

    topology: Topology
    """Planned nodes and genesis."""

    state: LifecycleState
    """Lifecycle state when the record was written."""

    nodes: dict[str, NodeRecord] = {}
    """Launched nodes by id, in launch order."""

    @property
    def run_id(self) -> str:
        """Identifier of the run."""
        return self.topology.run_id


@dataclass(frozen=True, slots=True)
class RunStore:
    """Run directories and the current-run pointer under one data directory."""

    data_dir: Path
    """Root of all run state."""

    @property
    def runs_dir(self) -> Path:
        """Directory holding every run directory."""
        return self.data_dir / RUNS_DIR_NAME

    @property
    def pointer(self) -> Path:
        """File naming the current run."""
        return self.data_dir / CURRENT_POINTER_NAME

    def run_dir(self, run_id: str) -> Path:
        """Directory of a run."""
        return self.runs_dir / run_id

    def current_run_id(self) -> str | None:
        """Id of the current run, None if there is none."""
        try:
            run_id = self.pointer.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        return run_id or None

    def set_current(self, run_id: str) -> None:
        """Make a run the current one."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        _write_atomic(self.pointer, run_id)

    def clear_current(self, run_id: str) -> None:
        """Forget the current run, unless the pointer moved on to another run."""
        if self.current_run_id() == run_id:
            self.pointer.unlink(missing_ok=True)

    def save(self, record: RunRecord) -> None:
        """Write a run's record into its run directory."""
        run_dir = self.run_dir(record.run_id)
        run_dir.mkdir(parents=True, exist_ok=True)
        _write_atomic(run_dir / RUN_RECORD_NAME, record.model_dump_json(by_alias=True, indent=2))

    def load(self, run_id: str) -> RunRecord | None:
        """
        Read a run's record.

        Returns:
            The record, or None if the run has no record.

        Raises:
            RecordUnreadable: If the record exists but cannot be parsed.
        """
        run_dir = self.run_dir(run_id)
        try:
            content = (run_dir / RUN_RECORD_NAME).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise RecordUnreadable(run_dir, str(e)) from e

        try:
            return RunRecord.model_validate_json(content)
        except ValidationError as e:
            raise RecordUnreadable(run_dir, f"{e.error_count()} validation errors") from e

    def load_current(self) -> RunRecord | None:
        """Record of the current run, None if there is no current run."""
        run_id = self.current_run_id()
        if run_id is None:
            return None
        record = self.load(run_id)
        if record is None:
            logger.warning("Current run %s has no record; ignoring it", run_id)
        return record


def _write_atomic(path: Path, content: str) -> None:
    """Replace a file's content so readers never observe a partial write."""
    tmp = path.with_name(f".{path.name}.tmp")
    tmp.write_text(content, encoding="utf-8")
    os.replace(tmp, path)
