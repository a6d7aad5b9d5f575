from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, List, Optional, Sequence

from .cancel import OperationCancelled, raise_if_cancelled, sleep_or_cancel
from .run_logger import RunLoggerV1
from .ssh_runner import RemoteShell, SSHError, expand_key_path

SSH_READY_RETRIES = 60
SSH_READY_INTERVAL_S = 3.0
SSH_ATTEMPT_TIMEOUT_S = 10.0


class ConnectivityError(RuntimeError):
    pass


def wait_ssh_ready(
    shell: RemoteShell,
    address: str,
    user: str,
    key_path: str,
    *,
    retries: int = SSH_READY_RETRIES,
    interval_s: float = SSH_READY_INTERVAL_S,
    attempt_timeout_s: float = SSH_ATTEMPT_TIMEOUT_S,
    cancel: Optional[threading.Event] = None,
    logger: Optional[RunLoggerV1] = None,
) -> int:
    """
    Run `true` on the host until it exits cleanly. Returns the attempt number that succeeded.
    """
    if not expand_key_path(key_path).exists():
        raise ConnectivityError(f"ssh private key file missing: {key_path}")
    last_err = ""
    n = max(1, int(retries))
    for attempt in range(1, n + 1):
        raise_if_cancelled(cancel, f"ssh readiness wait for {address}")
        try:
            code, _out, err = shell.exec_remote(address, user, key_path, "true", timeout_s=attempt_timeout_s, cancel=cancel)
            if int(code) == 0:
                if logger is not None:
                    logger.event("ssh_ready", ip=address, attempt=attempt)
                return attempt
            last_err = f"exit={code} stderr={err.decode('utf-8', errors='replace').strip()}"
        except OperationCancelled:
            raise
        except SSHError as exc:
            last_err = str(exc)
        if attempt < n and sleep_or_cancel(cancel, interval_s):
            raise OperationCancelled(f"ssh readiness wait for {address} cancelled")
    raise ConnectivityError(f"ssh not ready on {address} after {n} attempts: {last_err}")


def wait_all_ready(
    shell: RemoteShell,
    addresses: Sequence[str],
    user: str,
    key_path: str,
    *,
    workers: int = 0,
    retries: int = SSH_READY_RETRIES,
    interval_s: float = SSH_READY_INTERVAL_S,
    attempt_timeout_s: float = SSH_ATTEMPT_TIMEOUT_S,
    cancel: Optional[threading.Event] = None,
    logger: Optional[RunLoggerV1] = None,
) -> None:
    """
    Gate a whole batch; any host that never becomes reachable fails the batch.
    """
    addrs = [str(a) for a in addresses]
    if not addrs:
        return
    n_workers = int(workers) if int(workers) > 0 else len(addrs)
    errors: Dict[str, str] = {}
    with ThreadPoolExecutor(max_workers=min(n_workers, len(addrs))) as ex:
        futs = {
            ex.submit(
                wait_ssh_ready,
                shell,
                a,
                user,
                key_path,
                retries=retries,
                interval_s=interval_s,
                attempt_timeout_s=attempt_timeout_s,
                cancel=cancel,
                logger=logger,
            ): a
            for a in addrs
        }
        cancelled: List[OperationCancelled] = []
        for fut in as_completed(futs):
            a = futs[fut]
            try:
                fut.result()
            except OperationCancelled as exc:
                cancelled.append(exc)
            except ConnectivityError as exc:
                errors[a] = str(exc)
    if cancelled:
        raise cancelled[0]
    if errors:
        lines = [f"- [{a}] {errors[a]}" for a in addrs if a in errors]
        raise ConnectivityError(f"{len(errors)} hosts never became reachable:\n" + "\n".join(lines))
