from __future__ import annotations

import io
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Tuple

import paramiko

from .cancel import OperationCancelled
from .run_logger import redact_command


class SSHError(RuntimeError):
    pass


# (exit_status, stdout_bytes, stderr_bytes)
RemoteResult = Tuple[int, bytes, bytes]


class RemoteShell(Protocol):
    def exec_remote(
        self,
        address: str,
        user: str,
        key_path: str,
        command: str,
        *,
        timeout_s: float = 600.0,
        cancel: Optional[threading.Event] = None,
    ) -> RemoteResult:
        ...


def expand_key_path(path: str) -> Path:
    return Path(str(path).strip()).expanduser()


_KEY_CLASS_NAMES = ("Ed25519Key", "ECDSAKey", "RSAKey")

_READ_CHUNK = 65536


def load_private_key_from_file(path: str) -> Any:
    """
    Parse an unencrypted OpenSSH/PEM private key, trying Ed25519, ECDSA, then RSA.
    """
    p = expand_key_path(path).resolve()
    if not p.exists():
        raise SSHError(f"ssh private key file missing: {p}")
    text = p.read_text(encoding="utf-8")
    if not text.strip():
        raise SSHError(f"ssh private key file is empty: {p}")
    errors = []
    for name in _KEY_CLASS_NAMES:
        key_cls = getattr(paramiko, name, None)
        if key_cls is None:
            continue
        try:
            return key_cls.from_private_key(io.StringIO(text))
        except (paramiko.SSHException, ValueError) as exc:
            errors.append(f"{name}: {exc}")
    raise SSHError(f"unsupported ssh private key format in {p}: {'; '.join(errors)}")


def ssh_connect(*, hostname: str, port: int, username: str, pkey: Any, timeout_s: float = 10.0) -> paramiko.SSHClient:
    """
    Single connection attempt. Host keys are accepted on first use (ephemeral fleets), and
    neither the ssh agent nor ~/.ssh key discovery is consulted: only `pkey` is offered.
    """
    ssh = paramiko.SSHClient()
    ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())
    t = float(timeout_s)
    try:
        ssh.connect(
            hostname=str(hostname),
            port=int(port),
            username=str(username),
            pkey=pkey,
            timeout=t,
            banner_timeout=t,
            auth_timeout=t,
            allow_agent=False,
            look_for_keys=False,
        )
    except (paramiko.SSHException, OSError, EOFError) as exc:
        ssh.close()
        raise SSHError(f"ssh connect to {username}@{hostname}:{port} failed: {str(exc) or exc.__class__.__name__}") from exc
    return ssh


def _drain(ch: paramiko.Channel, out: List[bytes], err: List[bytes]) -> bool:
    """Move whatever is buffered on the channel into out/err. Returns True if anything was read."""
    got = False
    while ch.recv_ready():
        out.append(ch.recv(_READ_CHUNK))
        got = True
    while ch.recv_stderr_ready():
        err.append(ch.recv_stderr(_READ_CHUNK))
        got = True
    return got


def ssh_exec(
    ssh: paramiko.SSHClient,
    cmd: str,
    *,
    timeout_s: float = 600.0,
    cancel: Optional[threading.Event] = None,
) -> RemoteResult:
    """
    Run `cmd` on a plain session channel (no pty, so stdout bytes are exactly what the remote
    wrote) and return (exit_code, stdout, stderr). Both streams are read while the command
    runs so a chatty command cannot fill the window and stall.
    """
    transport = ssh.get_transport()
    if transport is None or not transport.is_active():
        raise SSHError("ssh transport is not connected")
    ch = transport.open_session()
    deadline = time.monotonic() + max(1.0, float(timeout_s))
    out: List[bytes] = []
    err: List[bytes] = []
    # never echo the command itself: it may carry key material
    shown = redact_command(cmd)[:200]
    try:
        ch.exec_command(str(cmd))
        while not ch.exit_status_ready():
            if cancel is not None and cancel.is_set():
                raise OperationCancelled(f"ssh command cancelled: {shown}")
            if time.monotonic() > deadline:
                raise SSHError(f"ssh command timed out after {timeout_s}s: {shown}")
            if not _drain(ch, out, err):
                time.sleep(0.02)
        _drain(ch, out, err)
        code = int(ch.recv_exit_status())
        # late data can still arrive between the exit status and EOF
        _drain(ch, out, err)
        return code, b"".join(out), b"".join(err)
    finally:
        ch.close()


def _is_live(ssh: paramiko.SSHClient) -> bool:
    transport = ssh.get_transport()
    return transport is not None and transport.is_active()


class ParamikoShellV1:
    """
    RemoteShell over paramiko. One cached connection per (user, host, port, key); a connection
    that fails mid-command is dropped so the next call reconnects.
    """

    def __init__(self, *, port: int = 22, connect_timeout_s: float = 10.0):
        self.port = int(port)
        self.connect_timeout_s = float(connect_timeout_s)
        self._lock = threading.Lock()
        self._clients: Dict[Tuple[str, str, int, str], paramiko.SSHClient] = {}
        self._pkeys: Dict[str, Any] = {}

    def _pkey(self, key_path: str) -> Any:
        kp = str(expand_key_path(key_path))
        with self._lock:
            pkey = self._pkeys.get(kp)
        if pkey is None:
            pkey = load_private_key_from_file(kp)
            with self._lock:
                self._pkeys[kp] = pkey
        return pkey

    def _client(self, address: str, user: str, key_path: str, timeout_s: float) -> Tuple[Tuple[str, str, int, str], paramiko.SSHClient]:
        key = (str(user), str(address), int(self.port), str(key_path))
        with self._lock:
            cached = self._clients.get(key)
            if cached is not None and _is_live(cached):
                return key, cached
        ssh = ssh_connect(
            hostname=address,
            port=self.port,
            username=user,
            pkey=self._pkey(key_path),
            timeout_s=min(float(timeout_s), self.connect_timeout_s),
        )
        with self._lock:
            current = self._clients.get(key)
            if current is not None and current is not ssh and _is_live(current):
                # a concurrent caller cached a live connection first
                loser, winner = ssh, current
            else:
                loser, winner = current, ssh
                self._clients[key] = ssh
        if loser is not None:
            loser.close()
        return key, winner

    def _drop(self, key: Tuple[str, str, int, str]) -> None:
        with self._lock:
            ssh = self._clients.pop(key, None)
        if ssh is not None:
            ssh.close()

    def exec_remote(
        self,
        address: str,
        user: str,
        key_path: str,
        command: str,
        *,
        timeout_s: float = 600.0,
        cancel: Optional[threading.Event] = None,
    ) -> RemoteResult:
        key, ssh = self._client(address, user, key_path, timeout_s)
        try:
            return ssh_exec(ssh, command, timeout_s=timeout_s, cancel=cancel)
        except OperationCancelled:
            self._drop(key)
            raise
        except SSHError:
            self._drop(key)
            raise
        except (paramiko.SSHException, OSError, EOFError) as exc:
            self._drop(key)
            raise SSHError(f"ssh exec on {user}@{address} failed: {exc}") from exc

    def close(self) -> None:
        with self._lock:
            keys = list(self._clients.keys())
        for key in keys:
            self._drop(key)
