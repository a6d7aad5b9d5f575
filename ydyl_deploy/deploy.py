from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import List, Optional

from .cancel import raise_if_cancelled
from .config import CommonConfigV1, DeployConfigV1
from .connectivity import wait_all_ready
from .dispatch import CommandDispatcher
from .log_sync import LogSyncMonitor
from .provisioner import ComputeProvider, Provisioner
from .run_logger import RunLoggerV1
from .ssh_runner import RemoteShell
from .state_store import STATUS_FILE, RunStatusV1, StateStore, StateStoreError

ROTATE_TS_FORMAT = "%Y%m%d-%H%M%S"


def rotate_existing_output_dir(output_dir: Path) -> Optional[Path]:
    """
    Archive a previous run's non-empty output dir as `{dir}-{YYYYmmdd-HHMMSS}` (mtime of its
    script_status.json, else of the dir itself). Returns the archive path, or None if nothing
    was moved. Nothing is ever deleted.
    """
    p = Path(output_dir)
    if not p.exists():
        return None
    if not p.is_dir():
        raise StateStoreError(f"output dir is not a directory: {p}")
    if not any(p.iterdir()):
        return None

    status = p / STATUS_FILE
    mtime = status.stat().st_mtime if status.exists() else p.stat().st_mtime
    base = f"{p}-{time.strftime(ROTATE_TS_FORMAT, time.localtime(mtime))}"
    dst = Path(base)
    n = 1
    while dst.exists():
        dst = Path(f"{base}.{n}")
        n += 1
    try:
        p.rename(dst)
    except OSError as exc:
        raise StateStoreError(f"failed to archive output dir {p} -> {dst}: {exc}") from exc
    return dst


def _prepare_dirs(common: CommonConfigV1) -> Path:
    try:
        Path(common.log_dir).expanduser().mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise StateStoreError(f"failed to create log dir {common.log_dir}: {exc}") from exc
    return common.resolved_output_dir()


def run_deploy_v1(
    cfg: DeployConfigV1,
    *,
    provider: ComputeProvider,
    shell: RemoteShell,
    logger: Optional[RunLoggerV1] = None,
    cancel: Optional[threading.Event] = None,
) -> List[RunStatusV1]:
    """
    Fresh deploy: per service, strictly in order, launch -> running -> addresses -> ssh ready ->
    dispatch. Log sync for all services starts once every dispatch phase has returned.
    """
    common = cfg.common
    out_dir = _prepare_dirs(common)
    archived = rotate_existing_output_dir(out_dir)
    if archived is not None and logger is not None:
        logger.log(f"existing output dir {out_dir} archived as {archived}")
    try:
        out_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise StateStoreError(f"failed to create output dir {out_dir}: {exc}") from exc

    store = StateStore(out_dir)
    provisioner = Provisioner(provider, common, logger=logger)
    dispatcher = CommandDispatcher(shell, provider, store, common, logger=logger, cancel=cancel)

    for svc in cfg.services:
        if int(svc.count) <= 0:
            continue
        raise_if_cancelled(cancel, "deploy")
        if logger is not None:
            logger.log(f"[{svc.type}] launching {svc.count} instances")
        ids = provisioner.launch_batch(svc)

        if logger is not None:
            logger.log(f"[{svc.type}] waiting for instances to be running: {ids}")
        provisioner.await_running(ids)
        addrs = provisioner.resolve_addresses(ids)
        store.add_instances(addrs, svc.type)

        if logger is not None:
            logger.log(f"[{svc.type}] waiting for ssh on {addrs}")
        wait_all_ready(
            shell,
            addrs,
            common.ssh_user,
            common.ssh_key_path(),
            workers=common.workers_for(len(addrs)),
            cancel=cancel,
            logger=logger,
        )

        if logger is not None:
            logger.log(f"[{svc.type}] dispatching remote commands (background)")
        dispatcher.dispatch(svc, addrs)

    if logger is not None:
        logger.log("all remote commands started, syncing logs and script status")
    return LogSyncMonitor(shell, store, common, logger=logger, cancel=cancel).run()


def resume_sync_v1(
    common: CommonConfigV1,
    *,
    shell: RemoteShell,
    logger: Optional[RunLoggerV1] = None,
    cancel: Optional[threading.Event] = None,
) -> List[RunStatusV1]:
    """Resume monitoring from persisted state without redispatching anything."""
    store = StateStore.load(_prepare_dirs(common))
    if logger is not None:
        logger.log(f"loaded {len(store.snapshot_statuses())} status records from {store.status_path}")
    return LogSyncMonitor(shell, store, common, logger=logger, cancel=cancel).run()
