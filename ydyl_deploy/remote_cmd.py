from __future__ import annotations

import posixpath
import shlex
from pathlib import Path
from typing import Tuple

REMOTE_LOG_DIR = "/home/ubuntu/ydyl-deploy-logs"
REMOTE_WORKDIR = "/home/ubuntu/workspace/ydyl-deployment-suite"


class RemoteCommandError(RuntimeError):
    pass


def build_remote_log_path(existing_path: str, name: str) -> Tuple[str, str]:
    """
    Returns (remote_log_file, remote_log_dir). An existing path is reused as-is (its directory
    becomes the log dir); otherwise the file is derived from the logical name.
    """
    if existing_path:
        return str(existing_path), posixpath.dirname(str(existing_path))
    return f"{REMOTE_LOG_DIR}/{name}.log", REMOTE_LOG_DIR


def build_background_command(run_duration_minutes: int, cmd: str, remote_log_dir: str, remote_log_file: str) -> str:
    return (
        f"sudo -n shutdown -h +{int(run_duration_minutes)}; "
        f"mkdir -p {remote_log_dir}; "
        f"cd {REMOTE_WORKDIR}; "
        f"nohup {cmd} > {remote_log_file} 2>&1 & echo $!"
    )


def build_local_log_path(log_dir: str, address: str, name: str) -> str:
    return str(Path(log_dir) / f"{address}-{name}.log")


def parse_remote_pid(output: str) -> int:
    """
    Parse the wrapper's stdout, where the background pid is printed last. The last non-blank
    line must be a positive integer.
    """
    lines = [ln.strip() for ln in str(output).splitlines() if ln.strip()]
    if not lines:
        raise RemoteCommandError("pid output is empty")
    last = lines[-1]
    try:
        pid = int(last, 10)
    except ValueError:
        raise RemoteCommandError(f"cannot parse pid from last output line: {last!r}") from None
    if pid <= 0:
        raise RemoteCommandError(f"invalid pid: {pid}")
    return pid


def log_size_command(remote_path: str) -> str:
    return f"wc -c < {shlex.quote(remote_path)} 2>/dev/null || echo 0"


def log_range_command(remote_path: str, start: int, count: int) -> str:
    # bytes [start, start+count) with 1-based start, as tail -c +N counts
    return f"tail -c +{int(start)} {shlex.quote(remote_path)} 2>/dev/null | head -c {int(count)} || true"


def process_alive_command(pid: int) -> str:
    return f"ps -p {int(pid)} -o pid="


def parse_log_size(output: str) -> int:
    tokens = str(output).split()
    if not tokens:
        return 0
    try:
        return int(tokens[-1], 10)
    except ValueError:
        raise RemoteCommandError(f"cannot parse remote log size: {output!r}") from None
