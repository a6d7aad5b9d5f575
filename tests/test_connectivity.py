from __future__ import annotations

import tempfile
import threading

import pytest

from fakes import FakeShell, make_common
from ydyl_deploy.cancel import OperationCancelled
from ydyl_deploy.connectivity import ConnectivityError, wait_all_ready, wait_ssh_ready


def test_wait_ssh_ready_retries_until_clean_exit() -> None:
    with tempfile.TemporaryDirectory() as td:
        common = make_common(td)
        shell = FakeShell()
        shell.ssh_failures["h1"] = 2
        attempt = wait_ssh_ready(shell, "h1", "ubuntu", common.ssh_key_path(), interval_s=0)
        assert attempt == 3
        assert shell.commands_for("h1") == ["true", "true", "true"]


def test_wait_ssh_ready_gives_up() -> None:
    with tempfile.TemporaryDirectory() as td:
        common = make_common(td)
        shell = FakeShell()
        shell.ssh_failures["h1"] = 100
        with pytest.raises(ConnectivityError) as ei:
            wait_ssh_ready(shell, "h1", "ubuntu", common.ssh_key_path(), retries=4, interval_s=0)
        assert "after 4 attempts" in str(ei.value)
        assert len(shell.calls) == 4


def test_wait_ssh_ready_missing_key_fails_fast() -> None:
    shell = FakeShell()
    with pytest.raises(ConnectivityError):
        wait_ssh_ready(shell, "h1", "ubuntu", "/no/such/key.pem")
    assert shell.calls == []


def test_wait_ssh_ready_cancelled() -> None:
    with tempfile.TemporaryDirectory() as td:
        common = make_common(td)
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(OperationCancelled):
            wait_ssh_ready(FakeShell(), "h1", "ubuntu", common.ssh_key_path(), cancel=cancel)


def test_wait_all_ready_fails_if_any_host_never_ready() -> None:
    with tempfile.TemporaryDirectory() as td:
        common = make_common(td)
        shell = FakeShell()
        shell.ssh_failures["bad"] = 100
        with pytest.raises(ConnectivityError) as ei:
            wait_all_ready(shell, ["good", "bad"], "ubuntu", common.ssh_key_path(), retries=2, interval_s=0)
        assert "[bad]" in str(ei.value)
        assert "[good]" not in str(ei.value)

        wait_all_ready(FakeShell(), ["a", "b", "c"], "ubuntu", common.ssh_key_path(), workers=2)
