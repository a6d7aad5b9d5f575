from __future__ import annotations

import threading
from typing import Optional


class OperationCancelled(RuntimeError):
    pass


def new_cancel_event() -> threading.Event:
    return threading.Event()


def raise_if_cancelled(cancel: Optional[threading.Event], what: str = "operation") -> None:
    if cancel is not None and cancel.is_set():
        raise OperationCancelled(f"{what} cancelled")


def sleep_or_cancel(cancel: Optional[threading.Event], seconds: float) -> bool:
    """
    Sleep up to `seconds`. Returns True if the cancel event fired (caller should stop).
    """
    if cancel is None:
        if seconds > 0:
            threading.Event().wait(timeout=float(seconds))
        return False
    return bool(cancel.wait(timeout=max(0.0, float(seconds))))
