from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .cancel import OperationCancelled, raise_if_cancelled
from .config import CommonConfigV1, ServiceConfigV1
from .provisioner import ComputeProvider
from .remote_cmd import (
    RemoteCommandError,
    build_background_command,
    build_local_log_path,
    build_remote_log_path,
    parse_remote_pid,
)
from .roles import build_remote_command
from .run_logger import RunLoggerV1, redact_command
from .ssh_runner import RemoteShell
from .state_store import RunStatusV1, StateStore

DISPATCH_TIMEOUT_S = 120.0


@dataclass(frozen=True)
class InstanceFailureV1:
    address: str
    name: str
    error: str

    def line(self) -> str:
        if self.name:
            return f"- [{self.address}][{self.name}] {self.error}"
        return f"- [{self.address}] {self.error}"


class DispatchError(RuntimeError):
    """
    Aggregate of per-instance failures; the message carries one line per failing instance.
    """

    def __init__(self, failures: Sequence[InstanceFailureV1]):
        self.failures: List[InstanceFailureV1] = list(failures)
        lines = [f"{len(self.failures)} machines failed:"] + [f.line() for f in self.failures]
        super().__init__("\n".join(lines))


def launch_background(
    shell: RemoteShell,
    common: CommonConfigV1,
    address: str,
    name: str,
    command: str,
    *,
    existing_remote_log: str = "",
    cancel: Optional[threading.Event] = None,
    logger: Optional[RunLoggerV1] = None,
) -> Tuple[int, str, str]:
    """
    Start `command` in the background on `address` and return (pid, remote_log_file, local_log_path).
    """
    remote_log_file, remote_log_dir = build_remote_log_path(existing_remote_log, name)
    full_cmd = build_background_command(common.run_duration_minutes(), command, remote_log_dir, remote_log_file)
    if logger is not None:
        logger.log(f"[{address}][{name}] run (background): {redact_command(full_cmd)}")
    code, out, err = shell.exec_remote(
        address, common.ssh_user, common.ssh_key_path(), full_cmd, timeout_s=DISPATCH_TIMEOUT_S, cancel=cancel
    )
    stdout = out.decode("utf-8", errors="replace")
    stderr = err.decode("utf-8", errors="replace")
    if int(code) != 0:
        raise RemoteCommandError(f"remote command failed, exit={code}: {(stdout + stderr).strip()[-500:]}")
    # shutdown reports on stderr; the pid from `echo $!` is on stdout
    try:
        pid = parse_remote_pid(stdout)
    except RemoteCommandError as exc:
        raise RemoteCommandError(f"failed to parse remote pid: {exc}, stdout: {stdout!r}, stderr: {stderr!r}") from exc
    return pid, remote_log_file, build_local_log_path(common.log_dir, address, name)


def fan_out(
    items: Sequence[Tuple[str, str]],
    fn: Callable[[str, str], Optional[RunStatusV1]],
    *,
    workers: int,
) -> Tuple[List[RunStatusV1], List[InstanceFailureV1]]:
    """
    Run fn(address, name) for every item concurrently, collecting results and per-item failures.
    Cancellation wins over any other outcome.
    """
    done: List[RunStatusV1] = []
    failures: Dict[int, InstanceFailureV1] = {}
    cancelled: Optional[OperationCancelled] = None
    if not items:
        return done, []
    with ThreadPoolExecutor(max_workers=max(1, min(int(workers), len(items)))) as ex:
        futs = {ex.submit(fn, address, name): i for i, (address, name) in enumerate(items)}
        for fut in as_completed(futs):
            i = futs[fut]
            address, name = items[i]
            try:
                st = fut.result()
                if st is not None:
                    done.append(st)
            except OperationCancelled as exc:
                cancelled = exc
            except Exception as exc:
                failures[i] = InstanceFailureV1(address=address, name=name, error=str(exc) or exc.__class__.__name__)
    if cancelled is not None:
        raise cancelled
    return done, [failures[i] for i in sorted(failures)]


class CommandDispatcher:
    def __init__(
        self,
        shell: RemoteShell,
        provider: ComputeProvider,
        store: StateStore,
        common: CommonConfigV1,
        *,
        logger: Optional[RunLoggerV1] = None,
        cancel: Optional[threading.Event] = None,
    ):
        self.shell = shell
        self.provider = provider
        self.store = store
        self.common = common
        self.logger = logger
        self.cancel = cancel

    def _log(self, msg: str) -> None:
        if self.logger is not None:
            self.logger.log(msg)

    def _dispatch_one(self, service: ServiceConfigV1, ordinal: int, address: str, name: str) -> RunStatusV1:
        prefix = f"[{address}][{name}]"
        raise_if_cancelled(self.cancel, f"dispatch to {address}")

        instance_id = self.provider.find_by_address(address)
        self.provider.tag(instance_id, name)
        self._log(f"{prefix} tagged instance {instance_id}")

        cmd = build_remote_command(ordinal, service, self.common)
        pid, remote_log, local_log = launch_background(
            self.shell, self.common, address, name, cmd, cancel=self.cancel, logger=self.logger
        )
        st = self.store.init_status(address, service.type, name, cmd, pid, remote_log, local_log)
        self._log(f"{prefix} started pid={pid} log={remote_log}")
        if self.logger is not None:
            self.logger.event("dispatched", ip=address, service=service.type, name=name, pid=pid, log_path=remote_log)
        return st

    def dispatch(self, service: ServiceConfigV1, addresses: Sequence[str]) -> List[RunStatusV1]:
        """
        Launch the role command on every address (ordinal = position + 1). Every instance is
        attempted; failures are raised together as DispatchError after the batch completes.
        """
        items = [(str(a), service.instance_name(i)) for i, a in enumerate(addresses, start=1)]
        ordinals = {name: i for i, (_address, name) in enumerate(items, start=1)}

        def run(address: str, name: str) -> RunStatusV1:
            return self._dispatch_one(service, ordinals[name], address, name)

        done, failures = fan_out(items, run, workers=self.common.workers_for(len(items)))
        if failures:
            for f in failures:
                self._log(f"[{f.address}][{f.name}] dispatch failed: {f.error}")
            raise DispatchError(failures)
        return done
