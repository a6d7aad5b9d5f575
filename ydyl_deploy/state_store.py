from __future__ import annotations

import json
import os
import threading
import time
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

SERVERS_FILE = "servers.json"
STATUS_FILE = "script_status.json"

STATE_RUNNING = "running"
STATE_SUCCESS = "success"
STATE_FAILED = "failed"
STATE_UNKNOWN = "unknown"

VALID_STATES = (STATE_RUNNING, STATE_SUCCESS, STATE_FAILED, STATE_UNKNOWN)
TERMINAL_STATES = (STATE_SUCCESS, STATE_FAILED, STATE_UNKNOWN)


class StateStoreError(RuntimeError):
    pass


def now_unix() -> int:
    return int(time.time())


def _atomic_write_text(path: Path, text: str) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    tmp = p.with_suffix(p.suffix + ".tmp")
    tmp.write_text(text, encoding="utf-8")
    os.replace(str(tmp), str(p))


def _dump_json_list(rows: List[Dict[str, Any]]) -> str:
    return json.dumps(rows, indent=2, ensure_ascii=False) + "\n"


@dataclass(frozen=True)
class InstanceRecordV1:
    address: str
    role: str

    def to_json_obj(self) -> Dict[str, Any]:
        return {"ip": str(self.address), "serviceType": str(self.role)}

    @staticmethod
    def from_json_obj(obj: Any) -> "InstanceRecordV1":
        if not isinstance(obj, dict):
            raise StateStoreError("instance record must be an object")
        return InstanceRecordV1(address=str(obj.get("ip") or ""), role=str(obj.get("serviceType") or ""))


@dataclass(frozen=True)
class RunStatusV1:
    address: str
    role: str
    name: str = ""
    command: str = ""
    pid: int = 0
    state: str = STATE_UNKNOWN
    reason: str = ""
    remote_log_path: str = ""
    local_log_path: str = ""
    updated_at: int = 0
    synced_offset: int = 0

    @property
    def key(self) -> Tuple[str, str]:
        return (str(self.address), str(self.role))

    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def logical_name(self) -> str:
        return self.name or f"{self.role}-{self.address}"

    def to_json_obj(self) -> Dict[str, Any]:
        obj: Dict[str, Any] = {"ip": str(self.address), "serviceType": str(self.role)}
        # empty/zero optionals are omitted
        if self.name:
            obj["name"] = str(self.name)
        if self.command:
            obj["command"] = str(self.command)
        obj["pid"] = int(self.pid)
        obj["status"] = str(self.state)
        if self.reason:
            obj["reason"] = str(self.reason)
        if self.remote_log_path:
            obj["logPath"] = str(self.remote_log_path)
        if self.local_log_path:
            obj["localLog"] = str(self.local_log_path)
        if self.updated_at:
            obj["updatedAt"] = int(self.updated_at)
        if self.synced_offset:
            obj["logSize"] = int(self.synced_offset)
        return obj

    @staticmethod
    def from_json_obj(obj: Any) -> "RunStatusV1":
        if not isinstance(obj, dict):
            raise StateStoreError("status record must be an object")
        try:
            st = RunStatusV1(
                address=str(obj.get("ip") or ""),
                role=str(obj.get("serviceType") or ""),
                name=str(obj.get("name") or ""),
                command=str(obj.get("command") or ""),
                pid=int(obj.get("pid") or 0),
                state=str(obj.get("status") or STATE_UNKNOWN),
                reason=str(obj.get("reason") or ""),
                remote_log_path=str(obj.get("logPath") or ""),
                local_log_path=str(obj.get("localLog") or ""),
                updated_at=int(obj.get("updatedAt") or 0),
                synced_offset=int(obj.get("logSize") or 0),
            )
        except (TypeError, ValueError) as exc:
            raise StateStoreError(f"malformed status record: {exc}") from exc
        if st.state not in VALID_STATES:
            raise StateStoreError(f"status record {st.address}/{st.role}: invalid status {st.state!r}")
        return st


def _check_status(st: RunStatusV1) -> None:
    if st.state not in VALID_STATES:
        raise StateStoreError(f"{st.address}/{st.role}: invalid state {st.state!r}")
    if st.synced_offset < 0:
        raise StateStoreError(f"{st.address}/{st.role}: negative log offset")
    if st.state == STATE_RUNNING:
        if int(st.pid) <= 0:
            raise StateStoreError(f"{st.address}/{st.role}: running requires pid > 0")
        if not st.remote_log_path:
            raise StateStoreError(f"{st.address}/{st.role}: running requires a remote log path")


def _check_transition(prev: Optional[RunStatusV1], nxt: RunStatusV1) -> None:
    if prev is None:
        return
    if nxt.key != prev.key:
        raise StateStoreError(f"{prev.address}/{prev.role}: record identity cannot change")
    if nxt.synced_offset < prev.synced_offset:
        raise StateStoreError(
            f"{prev.address}/{prev.role}: log offset cannot decrease ({prev.synced_offset} -> {nxt.synced_offset})"
        )
    if prev.is_terminal() and nxt.state == STATE_RUNNING:
        raise StateStoreError(f"{prev.address}/{prev.role}: terminal state {prev.state} cannot revert to running")


class StateStore:
    """
    Durable roster (servers.json) + per-instance run status (script_status.json).

    Every mutation runs under one lock, is applied to a copy, and is only committed in memory
    after the whole collection has been rewritten atomically (tmp file + os.replace). Readers get
    copies; the records themselves are immutable.
    """

    def __init__(self, output_dir: Path):
        self.output_dir = Path(output_dir)
        self.servers_path = self.output_dir / SERVERS_FILE
        self.status_path = self.output_dir / STATUS_FILE
        self._lock = threading.Lock()
        self._instances: List[InstanceRecordV1] = []
        self._statuses: Dict[Tuple[str, str], RunStatusV1] = {}

    @classmethod
    def load(cls, output_dir: Path) -> "StateStore":
        store = cls(output_dir)
        store._instances = [InstanceRecordV1.from_json_obj(x) for x in _read_json_list(store.servers_path)]
        statuses: Dict[Tuple[str, str], RunStatusV1] = {}
        for row in _read_json_list(store.status_path):
            st = RunStatusV1.from_json_obj(row)
            statuses[st.key] = st
        store._statuses = statuses
        return store

    def _persist_instances(self, rows: List[InstanceRecordV1]) -> None:
        try:
            _atomic_write_text(self.servers_path, _dump_json_list([r.to_json_obj() for r in rows]))
        except OSError as exc:
            raise StateStoreError(f"failed to write {self.servers_path}: {exc}") from exc

    def _persist_statuses(self, rows: Dict[Tuple[str, str], RunStatusV1]) -> None:
        try:
            _atomic_write_text(self.status_path, _dump_json_list([r.to_json_obj() for r in rows.values()]))
        except OSError as exc:
            raise StateStoreError(f"failed to write {self.status_path}: {exc}") from exc

    def add_instances(self, addresses: Iterable[str], role: str) -> None:
        with self._lock:
            nxt = list(self._instances)
            nxt.extend(InstanceRecordV1(address=str(a), role=str(role)) for a in addresses)
            self._persist_instances(nxt)
            self._instances = nxt

    def init_status(
        self,
        address: str,
        role: str,
        name: str,
        command: str,
        pid: int,
        remote_log_path: str,
        local_log_path: str,
        now: Optional[int] = None,
    ) -> RunStatusV1:
        """
        Start (or restart) a record in `running` at offset 0. This is the only way back to
        `running` from a terminal state.
        """
        st = RunStatusV1(
            address=str(address),
            role=str(role),
            name=str(name),
            command=str(command),
            pid=int(pid),
            state=STATE_RUNNING,
            remote_log_path=str(remote_log_path),
            local_log_path=str(local_log_path),
            updated_at=int(now) if now is not None else now_unix(),
            synced_offset=0,
        )
        _check_status(st)
        with self._lock:
            nxt = dict(self._statuses)
            nxt[st.key] = st
            self._persist_statuses(nxt)
            self._statuses = nxt
        return st

    def update_status(self, address: str, role: str, mutate: Callable[[RunStatusV1], RunStatusV1]) -> RunStatusV1:
        key = (str(address), str(role))
        with self._lock:
            prev = self._statuses.get(key)
            base = prev if prev is not None else RunStatusV1(address=key[0], role=key[1])
            st = mutate(replace(base))
            if not isinstance(st, RunStatusV1):
                raise StateStoreError("status mutation must return a RunStatusV1")
            _check_status(st)
            _check_transition(prev, st)
            nxt = dict(self._statuses)
            nxt[key] = st
            self._persist_statuses(nxt)
            self._statuses = nxt
            return st

    def get_status(self, address: str, role: str) -> Optional[RunStatusV1]:
        with self._lock:
            return self._statuses.get((str(address), str(role)))

    def snapshot_statuses(self) -> List[RunStatusV1]:
        with self._lock:
            return list(self._statuses.values())

    def snapshot_instances(self) -> List[InstanceRecordV1]:
        with self._lock:
            return list(self._instances)


def _read_json_list(path: Path) -> List[Any]:
    p = Path(path)
    if not p.exists():
        return []
    try:
        text = p.read_text(encoding="utf-8")
    except OSError as exc:
        raise StateStoreError(f"failed to read {p}: {exc}") from exc
    if not text.strip():
        return []
    try:
        obj = json.loads(text)
    except json.JSONDecodeError as exc:
        raise StateStoreError(f"malformed json in {p}: {exc}") from exc
    if obj is None:
        return []
    if not isinstance(obj, list):
        raise StateStoreError(f"{p}: expected a json array")
    return obj
