from __future__ import annotations

import threading
from typing import Iterable, List, Optional, Set

from .config import CommonConfigV1
from .dispatch import DispatchError, fan_out, launch_background
from .log_sync import LogSyncMonitor
from .run_logger import RunLoggerV1
from .ssh_runner import RemoteShell
from .state_store import RunStatusV1, StateStore


class RestoreError(RuntimeError):
    pass


class Restorer:
    """
    Re-launches recorded commands on the existing fleet using only persisted state, then hands
    off to the log sync loop. No instances are created.
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
        self.cancel = cancel

    def select(self, statuses: Iterable[RunStatusV1], only_addresses: Optional[Iterable[str]] = None) -> List[RunStatusV1]:
        wanted: Optional[Set[str]] = None
        if only_addresses is not None:
            wanted = {str(a).strip() for a in only_addresses if str(a).strip()}
        out: List[RunStatusV1] = []
        for st in statuses:
            if not st.address or not st.command:
                continue
            if wanted is not None and st.address not in wanted:
                continue
            out.append(st)
        return out

    def _redispatch_one(self, st: RunStatusV1) -> RunStatusV1:
        name = st.logical_name()
        pid, remote_log, local_log = launch_background(
            self.shell,
            self.common,
            st.address,
            name,
            st.command,
            existing_remote_log=st.remote_log_path,
            cancel=self.cancel,
            logger=self.logger,
        )
        done = self.store.init_status(
            st.address, st.role, name, st.command, pid, remote_log, st.local_log_path or local_log
        )
        if self.logger is not None:
            self.logger.event("redispatched", ip=st.address, service=st.role, name=name, pid=pid, log_path=remote_log)
        return done

    def redispatch(self, only_addresses: Optional[Iterable[str]] = None) -> List[RunStatusV1]:
        """
        Returns the records that were restarted. Records without an address or a command are
        skipped and not counted.
        """
        statuses = self.store.snapshot_statuses()
        if not statuses:
            raise RestoreError(f"no status records found in {self.store.status_path}")
        targets = self.select(statuses, only_addresses)
        by_item = {(st.address, st.logical_name()): st for st in targets}
        items = [(st.address, st.logical_name()) for st in targets]

        def run(address: str, name: str) -> RunStatusV1:
            return self._redispatch_one(by_item[(address, name)])

        done, failures = fan_out(items, run, workers=self.common.workers_for(len(items)))
        if failures:
            raise DispatchError(failures)
        if self.logger is not None:
            self.logger.log(f"[restore] {len(done)} remote commands started")
        return done

    def run(self, only_addresses: Optional[Iterable[str]] = None) -> List[RunStatusV1]:
        self.redispatch(only_addresses)
        return LogSyncMonitor(self.shell, self.store, self.common, logger=self.logger, cancel=self.cancel).run()


def restore(
    common: CommonConfigV1,
    shell: RemoteShell,
    *,
    only_addresses: Optional[Iterable[str]] = None,
    logger: Optional[RunLoggerV1] = None,
    cancel: Optional[threading.Event] = None,
) -> List[RunStatusV1]:
    store = StateStore.load(common.resolved_output_dir())
    return Restorer(shell, store, common, logger=logger, cancel=cancel).run(only_addresses)
