from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import replace
from pathlib import Path
from typing import List, Optional, Tuple

from .cancel import OperationCancelled, raise_if_cancelled, sleep_or_cancel
from .classify import classify_log_text
from .config import CommonConfigV1
from .remote_cmd import (
    RemoteCommandError,
    build_local_log_path,
    log_range_command,
    log_size_command,
    parse_log_size,
    process_alive_command,
)
from .run_logger import RunLoggerV1
from .ssh_runner import RemoteShell, SSHError
from .state_store import STATE_FAILED, STATE_RUNNING, RunStatusV1, StateStore, now_unix

REMOTE_CMD_TIMEOUT_S = 60.0
MAX_FETCH_BYTES = 4 * 1024 * 1024
CLASSIFY_TAIL_BYTES = 64 * 1024


class ScriptFailedError(RuntimeError):
    def __init__(self, address: str, role: str, reason: str):
        self.address = str(address)
        self.role = str(role)
        self.reason = str(reason)
        super().__init__(f"remote script failed: ip={self.address} serviceType={self.role}: {self.reason}")


def fetch_remote_log_delta(
    shell: RemoteShell,
    common: CommonConfigV1,
    address: str,
    remote_path: str,
    offset: int,
    *,
    max_bytes: int = MAX_FETCH_BYTES,
    cancel: Optional[threading.Event] = None,
) -> Tuple[bytes, int]:
    """
    Returns (new_bytes, new_offset). Reads exactly the bytes past `offset` (capped at `max_bytes`);
    the offset only advances by what was actually received.
    """
    if not remote_path:
        raise RemoteCommandError("remote log path is empty")
    user, key_path = common.ssh_user, common.ssh_key_path()
    code, out, err = shell.exec_remote(
        address, user, key_path, log_size_command(remote_path), timeout_s=REMOTE_CMD_TIMEOUT_S, cancel=cancel
    )
    if int(code) != 0:
        raise RemoteCommandError(f"log size query failed, exit={code}: {err.decode('utf-8', errors='replace').strip()}")
    size = parse_log_size(out.decode("utf-8", errors="replace"))
    if size <= int(offset):
        return b"", int(offset)

    count = min(size - int(offset), int(max_bytes))
    code, out, err = shell.exec_remote(
        address,
        user,
        key_path,
        log_range_command(remote_path, int(offset) + 1, count),
        timeout_s=REMOTE_CMD_TIMEOUT_S,
        cancel=cancel,
    )
    if int(code) != 0:
        raise RemoteCommandError(f"log read failed, exit={code}: {err.decode('utf-8', errors='replace').strip()}")
    data = bytes(out[:count])
    return data, int(offset) + len(data)


def probe_process_alive(
    shell: RemoteShell,
    common: CommonConfigV1,
    address: str,
    pid: int,
    *,
    cancel: Optional[threading.Event] = None,
) -> bool:
    code, out, _err = shell.exec_remote(
        address,
        common.ssh_user,
        common.ssh_key_path(),
        process_alive_command(pid),
        timeout_s=REMOTE_CMD_TIMEOUT_S,
        cancel=cancel,
    )
    return int(code) == 0 and bool(out.strip())


def _append_bytes(path: Path, data: bytes) -> None:
    if not data:
        return
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    with open(p, "ab") as f:
        f.write(data)


def _read_tail(path: Path, n: int) -> bytes:
    p = Path(path)
    if not p.exists():
        return b""
    with open(p, "rb") as f:
        f.seek(0, 2)
        size = f.tell()
        f.seek(max(0, size - int(n)))
        return f.read()


class LogSyncMonitor:
    """
    Mirrors every running instance's remote log into its local file and settles the record once
    the remote process exits. One poll loop per instance.
    """

    def __init__(
        self,
        shell: RemoteShell,
        store: StateStore,
        common: CommonConfigV1,
        *,
        logger: Optional[RunLoggerV1] = None,
        cancel: Optional[threading.Event] = None,
    ):
        self.shell = shell
        self.store = store
        self.common = common
        self.logger = logger
        # also set internally when one loop hits a fatal error so the others stop
        self.cancel = cancel if cancel is not None else threading.Event()

    def _warn(self, msg: str) -> None:
        if self.logger is not None:
            self.logger.warn(msg)

    def _sync_once(self, st: RunStatusV1, local_log: Path, offset: int) -> Tuple[bytes, int]:
        try:
            data, new_offset = fetch_remote_log_delta(
                self.shell, self.common, st.address, st.remote_log_path, offset, cancel=self.cancel
            )
        except (SSHError, RemoteCommandError) as exc:
            self._warn(f"[{st.address}] fetch remote log failed ({st.remote_log_path}): {exc}")
            return b"", offset
        try:
            _append_bytes(local_log, data)
        except OSError as exc:
            # keep the offset so the same bytes are fetched again
            self._warn(f"[{st.address}] write local log failed {local_log}: {exc}")
            return b"", offset
        return data, new_offset

    def monitor_one(self, st: RunStatusV1) -> RunStatusV1:
        local_log = Path(st.local_log_path or build_local_log_path(self.common.log_dir, st.address, st.logical_name()))
        offset = int(st.synced_offset)
        interval_s = float(self.common.sync_interval_s)

        while True:
            raise_if_cancelled(self.cancel, f"log sync for {st.address}")
            _, offset = self._sync_once(st, local_log, offset)

            try:
                alive = probe_process_alive(self.shell, self.common, st.address, st.pid, cancel=self.cancel)
            except (SSHError, RemoteCommandError) as exc:
                self._warn(f"[{st.address}] process check failed (pid={st.pid}): {exc}")
                if sleep_or_cancel(self.cancel, interval_s):
                    raise OperationCancelled(f"log sync for {st.address} cancelled")
                continue

            now = now_unix()
            if alive:
                cur = offset
                self.store.update_status(
                    st.address,
                    st.role,
                    lambda s: replace(
                        s, state=STATE_RUNNING, updated_at=now, synced_offset=cur, local_log_path=s.local_log_path or str(local_log)
                    ),
                )
                if sleep_or_cancel(self.cancel, interval_s):
                    raise OperationCancelled(f"log sync for {st.address} cancelled")
                continue

            # exited: drain whatever is left, then judge from the newest text
            while True:
                data, offset = self._sync_once(st, local_log, offset)
                if not data:
                    break
            state, reason = classify_log_text(st.role, _read_tail(local_log, CLASSIFY_TAIL_BYTES))
            final = offset
            done = self.store.update_status(
                st.address,
                st.role,
                lambda s: replace(
                    s,
                    state=state,
                    reason=reason,
                    updated_at=now,
                    synced_offset=final,
                    local_log_path=s.local_log_path or str(local_log),
                ),
            )
            if self.logger is not None:
                self.logger.event("script_finished", ip=st.address, service=st.role, status=state, reason=reason, log_size=final)
            return done

    def run(self) -> List[RunStatusV1]:
        """
        Block until every running record is terminal. The first record that settles as `failed`
        is raised as ScriptFailedError once all loops have returned.
        """
        targets = [
            st for st in self.store.snapshot_statuses() if st.state == STATE_RUNNING and st.pid > 0 and st.remote_log_path
        ]
        if not targets:
            return []
        if self.logger is not None:
            self.logger.log(f"log sync started for {len(targets)} instances")

        finished: List[RunStatusV1] = []
        first_failed: Optional[RunStatusV1] = None
        cancelled: Optional[OperationCancelled] = None
        fatal: Optional[Exception] = None
        with ThreadPoolExecutor(max_workers=self.common.workers_for(len(targets))) as ex:
            futs = {ex.submit(self.monitor_one, st): st for st in targets}
            for fut in as_completed(futs):
                try:
                    done = fut.result()
                except OperationCancelled as exc:
                    cancelled = exc
                    continue
                except Exception as exc:
                    if fatal is None:
                        fatal = exc
                        self.cancel.set()
                    continue
                finished.append(done)
                if done.state == STATE_FAILED and first_failed is None:
                    first_failed = done
        if fatal is not None:
            raise fatal
        if cancelled is not None:
            raise cancelled
        if first_failed is not None:
            raise ScriptFailedError(first_failed.address, first_failed.role, first_failed.reason)
        return finished
