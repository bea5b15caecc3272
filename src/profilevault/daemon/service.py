"""PID file of the per-profile auto-backup daemon."""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path

from profilevault.core.fileutil import safe_profile_name

log = logging.getLogger(__name__)


def pid_alive(pid: int) -> bool:
    """True if a process with ``pid`` exists."""
    if pid <= 0:
        return False
    if os.name == "nt":
        # signal 0 is CTRL_C_EVENT on Windows, so ask tasklist instead
        try:
            out = subprocess.run(
                ["tasklist", "/FI", f"PID eq {pid}", "/NH", "/FO", "CSV"],
                capture_output=True, text=True, timeout=5, check=False,
            ).stdout
        except (subprocess.SubprocessError, OSError):
            return False
        return f'"{pid}"' in out
    try:
        os.kill(pid, 0)
    except OSError:
        return False
    return True


@dataclass(frozen=True)
class DaemonPidFile:
    """``<home>/.pvault/daemon-<profile>.pid``, one per profile."""

    home: Path
    profile_name: str

    @property
    def path(self) -> Path:
        return self.home / ".pvault" / f"daemon-{safe_profile_name(self.profile_name)}.pid"

    def claim(self) -> None:
        """Record the current process as this profile's daemon."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(f"{os.getpid()}\n", encoding="utf-8")

    def pid(self) -> int | None:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            log.warning("Cannot read daemon PID file %s: %s", self.path, e)
            return None
        try:
            return int(text.strip())
        except ValueError:
            log.warning("Ignoring malformed daemon PID file %s", self.path)
            return None

    def live_pid(self) -> int | None:
        """PID of the running daemon. A file left by a dead process is removed."""
        pid = self.pid()
        if pid is None:
            return None
        if pid_alive(pid):
            return pid
        log.info("Removing stale daemon PID file %s (process %d is gone)", self.path, pid)
        self.clear()
        return None

    def clear(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            log.warning("Cannot remove daemon PID file %s: %s", self.path, e)
