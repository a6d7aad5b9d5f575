from __future__ import annotations

import tempfile
from dataclasses import replace
from pathlib import Path

import pytest

from fakes import FakeShell, make_common
from ydyl_deploy.classify import COMPLETION_SENTINEL
from ydyl_deploy.dispatch import DispatchError
from ydyl_deploy.restore import RestoreError, Restorer, restore
from ydyl_deploy.state_store import RunStatusV1, StateStore


def _seed(store: StateStore) -> None:
    store.init_status("10.0.0.1", "op", "t-op-1", "./op.sh", 11, "/data/old/t-op-1.log", "/l/10.0.0.1-t-op-1.log")
    store.update_status("10.0.0.1", "op", lambda s: replace(s, state="failed", synced_offset=500, reason="x"))
    store.init_status("10.0.0.2", "cdk", "", "./cdk.sh", 12, "/r/cdk.log", "")
    store.update_status("10.0.0.2", "cdk", lambda s: replace(s, state="unknown"))
    # no command recorded: never restarted
    store.update_status("10.0.0.3", "op", lambda s: replace(s, state="unknown"))


def test_restore_skips_records_without_command() -> None:
    with tempfile.TemporaryDirectory() as td:
        common = make_common(td)
        store = StateStore(Path(td) / "out")
        _seed(store)
        shell = FakeShell()

        done = Restorer(shell, store, common).redispatch()

        assert sorted(st.address for st in done) == ["10.0.0.1", "10.0.0.2"]
        assert shell.commands_for("10.0.0.3") == []
        untouched = store.get_status("10.0.0.3", "op")
        assert untouched is not None and untouched.state == "unknown"


def test_restore_reuses_recorded_paths_and_resets_offset() -> None:
    with tempfile.TemporaryDirectory() as td:
        common = make_common(td)
        store = StateStore(Path(td) / "out")
        _seed(store)
        shell = FakeShell()

        Restorer(shell, store, common).redispatch()

        [cmd1] = shell.commands_for("10.0.0.1", "sudo")
        assert "mkdir -p /data/old; " in cmd1
        assert cmd1.endswith("nohup ./op.sh > /data/old/t-op-1.log 2>&1 & echo $!")
        st1 = store.get_status("10.0.0.1", "op")
        assert st1.state == "running" and st1.synced_offset == 0 and st1.reason == ""
        assert st1.pid == shell.pids["10.0.0.1"] and st1.pid != 11
        assert st1.local_log_path == "/l/10.0.0.1-t-op-1.log"

        # missing logical name defaults to "{role}-{address}"
        st2 = store.get_status("10.0.0.2", "cdk")
        assert st2.name == "cdk-10.0.0.2"
        assert st2.local_log_path == str(Path(common.log_dir) / "10.0.0.2-cdk-10.0.0.2.log")
        [cmd2] = shell.commands_for("10.0.0.2", "sudo")
        assert "> /r/cdk.log 2>&1" in cmd2


def test_restore_address_filter() -> None:
    with tempfile.TemporaryDirectory() as td:
        common = make_common(td)
        store = StateStore(Path(td) / "out")
        _seed(store)
        shell = FakeShell()

        done = Restorer(shell, store, common).redispatch(only_addresses=["10.0.0.2", " "])
        assert [st.address for st in done] == ["10.0.0.2"]
        assert shell.commands_for("10.0.0.1") == []


def test_restore_requires_status_records() -> None:
    with tempfile.TemporaryDirectory() as td:
        common = make_common(td)
        with pytest.raises(RestoreError):
            restore(common, FakeShell())


def test_restore_aggregates_pid_failures() -> None:
    with tempfile.TemporaryDirectory() as td:
        common = make_common(td)
        store = StateStore(Path(td) / "out")
        _seed(store)
        shell = FakeShell()
        shell.pid_outputs["10.0.0.2"] = "garbage"

        with pytest.raises(DispatchError) as ei:
            Restorer(shell, store, common).redispatch()
        assert [f.address for f in ei.value.failures] == ["10.0.0.2"]
        assert store.get_status("10.0.0.1", "op").state == "running"


def test_restore_end_to_end_then_sync() -> None:
    with tempfile.TemporaryDirectory() as td:
        common = make_common(td)
        store = StateStore(common.resolved_output_dir())
        store.init_status("10.0.0.9", "op", "t-op-1", "./op.sh", 11, "/r/t-op-1.log", "")
        store.update_status("10.0.0.9", "op", lambda s: replace(s, state="failed"))

        shell = FakeShell()
        shell.log_stages["10.0.0.9"] = [("ok\n" + COMPLETION_SENTINEL + "\n").encode("utf-8")]
        shell.alive["10.0.0.9"] = [False]

        done = restore(common, shell)
        assert len(done) == 1
        assert isinstance(done[0], RunStatusV1)
        assert done[0].state == "success"
