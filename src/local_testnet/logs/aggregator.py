"""
Per-node log capture.

Each node's stdout and stderr are bound directly to an append-only file. The
kernel drains the pipe into the file, so a slow reader can never stall the node,
and capture keeps working after the orchestrating process has exited.
"""

from __future__ import annotations

import logging
import os
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO

from local_testnet.exceptions import InvalidParams
from local_testnet.topology import NodeSpec

logger = logging.getLogger(__name__)

LOGS_DIR_NAME = "logs"
"""Name of the log directory inside the run directory."""

LOG_SUFFIX = ".log"


@dataclass(slots=True)
class LogHandle:
    """Open log sink of one node."""

    node_id: str
    """Node writing into this sink."""

    path: Path
    """Log file."""

    _file: BinaryIO | None = field(default=None, repr=False)
    """Open append-only file, None once closed."""

    @property
    def closed(self) -> bool:
        """Whether the sink has been closed."""
        return self._file is None

    def fileno(self) -> int:
        """Descriptor handed to the child process as stdout and stderr."""
        if self._file is None:
            raise ValueError(f"log of {self.node_id} is closed")
        return self._file.fileno()

    def write_marker(self, text: str) -> None:
        """Append an orchestrator line, e.g. the command line or exit status."""
        if self._file is not None:
            self._file.write(f"[local-testnet] {text}\n".encode())

    def close(self) -> None:
        """Flush and close the sink. Safe to call repeatedly."""
        if self._file is None:
            return
        try:
            self._file.flush()
            os.fsync(self._file.fileno())
        except OSError as e:
            logger.debug("Could not sync log of %s: %s", self.node_id, e)
        finally:
            self._file.close()
            self._file = None


@dataclass(slots=True)
class LogAggregator:
    """
    Owns the log directory of one run.

    Logs stay addressable by node id for as long as the run directory exists,
    including from a process other than the one that launched the nodes.
    """

    log_dir: Path
    """Directory holding one file per node."""

    _handles: dict[str, LogHandle] = field(default_factory=dict)
    """Open handles by node id."""

    def path_for(self, node_id: str) -> Path:
        """Log file of a node."""
        return self.log_dir / f"{node_id}{LOG_SUFFIX}"

    def attach(self, spec: NodeSpec) -> LogHandle:
        """
        Open the log sink of a node.

        The file is opened unbuffered in append mode; a relaunched node keeps
        the output of its earlier attempts.

        Args:
            spec: Node about to be launched.

        Returns:
            Handle whose descriptor becomes the node's stdout and stderr.
        """
        self.log_dir.mkdir(parents=True, exist_ok=True)
        path = self.path_for(spec.node_id)

        previous = self._handles.get(spec.node_id)
        if previous is not None:
            previous.close()

        handle = LogHandle(node_id=spec.node_id, path=path, _file=path.open("ab", buffering=0))
        self._handles[spec.node_id] = handle
        return handle

    def close_all(self) -> None:
        """Close every open handle."""
        for handle in self._handles.values():
            handle.close()
        self._handles.clear()

    def dump(self, tail: int | None = None) -> dict[str, str]:
        """
        Read every node log of the run.

        Works mid-run, after nodes stopped, and from another process.

        Args:
            tail: Keep only the last ``tail`` lines of each log.

        Returns:
            Log contents by node id, sorted by node id. Empty if nothing was captured.

        Raises:
            InvalidParams: If tail is negative.
        """
        if tail is not None and tail < 0:
            raise InvalidParams(f"tail must be non-negative, got {tail}")
        if not self.log_dir.is_dir():
            return {}

        logs: dict[str, str] = {}
        for path in sorted(self.log_dir.glob(f"*{LOG_SUFFIX}")):
            with path.open(encoding="utf-8", errors="replace") as f:
                if tail is None:
                    content = f.read()
                else:
                    content = "".join(deque(f, maxlen=tail))
            logs[path.stem] = content
        return logs
