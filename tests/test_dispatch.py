from __future__ import annotations

import tempfile
from pathlib import Path

import pytest

from fakes import SHUTDOWN_NOTICE, FakeProvider, FakeShell, make_common
from ydyl_deploy.config import ServiceConfigV1
from ydyl_deploy.dispatch import CommandDispatcher, DispatchError
from ydyl_deploy.keys import derive_vault_private_key_hex
from ydyl_deploy.state_store import StateStore

ADDRS = [f"10.1.0.{i}" for i in range(1, 6)]


def test_dispatch_aggregates_per_instance_failures() -> None:
    with tempfile.TemporaryDirectory() as td:
        common = make_common(td)
        store = StateStore(Path(td) / "out")
        shell = FakeShell()
        # instances 2 and 4 print something that is not a pid
        shell.pid_outputs[ADDRS[1]] = "sudo: a password is required\n"
        shell.pid_outputs[ADDRS[3]] = "4000\nnohup: ignoring input\n"
        provider = FakeProvider()
        svc = ServiceConfigV1(type="generic", tag_prefix="t", count=5, remote_cmd="./run.sh")

        with pytest.raises(DispatchError) as ei:
            CommandDispatcher(shell, provider, store, common).dispatch(svc, ADDRS)

        failures = ei.value.failures
        assert [(f.address, f.name) for f in failures] == [(ADDRS[1], "t-generic-2"), (ADDRS[3], "t-generic-4")]
        msg = str(ei.value)
        assert msg.splitlines()[0] == "2 machines failed:"
        assert msg.splitlines()[1].startswith(f"- [{ADDRS[1]}][t-generic-2] ")
        assert msg.splitlines()[2].startswith(f"- [{ADDRS[3]}][t-generic-4] ")

        running = {st.address: st for st in store.snapshot_statuses()}
        assert sorted(running) == sorted([ADDRS[0], ADDRS[2], ADDRS[4]])
        for st in running.values():
            assert st.state == "running" and st.synced_offset == 0
            assert st.pid == shell.pids[st.address]
            assert st.command == "./run.sh"
        assert running[ADDRS[2]].name == "t-generic-3"
        assert running[ADDRS[2]].remote_log_path == "/home/ubuntu/ydyl-deploy-logs/t-generic-3.log"
        assert running[ADDRS[2]].local_log_path == str(Path(common.log_dir) / f"{ADDRS[2]}-t-generic-3.log")

        # every instance was re-tagged, including the failing ones
        tagged = sorted(name for names in provider.tags.values() for name in names)
        assert tagged == [f"t-generic-{i}" for i in range(1, 6)]


def test_dispatch_wraps_command_in_background_launcher() -> None:
    with tempfile.TemporaryDirectory() as td:
        common = make_common(td, run_duration_s=5400.0)
        store = StateStore(Path(td) / "out")
        shell = FakeShell()
        svc = ServiceConfigV1(type="generic", tag_prefix="t", count=1, remote_cmd="./run.sh --fast")

        CommandDispatcher(shell, FakeProvider(), store, common).dispatch(svc, ["10.2.0.1"])

        [cmd] = shell.commands_for("10.2.0.1", "sudo")
        assert cmd == (
            "sudo -n shutdown -h +90; mkdir -p /home/ubuntu/ydyl-deploy-logs; "
            "cd /home/ubuntu/workspace/ydyl-deployment-suite; "
            "nohup ./run.sh --fast > /home/ubuntu/ydyl-deploy-logs/t-generic-1.log 2>&1 & echo $!"
        )


def test_dispatch_builds_role_command_per_ordinal() -> None:
    with tempfile.TemporaryDirectory() as td:
        common = make_common(td)
        store = StateStore(Path(td) / "out")
        shell = FakeShell()
        svc = ServiceConfigV1(type="op", tag_prefix="t", count=2)

        CommandDispatcher(shell, FakeProvider(), store, common).dispatch(svc, ["10.3.0.1", "10.3.0.2"])

        second = store.get_status("10.3.0.2", "op")
        assert second is not None
        assert "L2_CHAIN_ID=10002 " in second.command
        assert f"L1_VAULT_PRIVATE_KEY={derive_vault_private_key_hex(common.l1_vault_mnemonic, 2)} " in second.command
        assert second.command.endswith("./op_pipe.sh")


def test_dispatch_role_without_template_fails_fast() -> None:
    with tempfile.TemporaryDirectory() as td:
        common = make_common(td)
        store = StateStore(Path(td) / "out")
        shell = FakeShell()
        svc = ServiceConfigV1(type="xjst", tag_prefix="t", count=4)

        with pytest.raises(DispatchError) as ei:
            CommandDispatcher(shell, FakeProvider(), store, common).dispatch(svc, ["a", "b"])
        assert len(ei.value.failures) == 2
        assert "remoteCmd" in ei.value.failures[0].error
        assert shell.commands_for("a", "sudo") == []
        assert store.snapshot_statuses() == []


def test_dispatch_unknown_instance_is_a_per_instance_failure() -> None:
    with tempfile.TemporaryDirectory() as td:
        common = make_common(td)
        store = StateStore(Path(td) / "out")
        svc = ServiceConfigV1(type="generic", tag_prefix="t", count=2, remote_cmd="./run.sh")

        with pytest.raises(DispatchError) as ei:
            CommandDispatcher(FakeShell(), FakeProvider(unknown_addresses=["b"]), store, common).dispatch(svc, ["a", "b"])
        assert [f.address for f in ei.value.failures] == ["b"]
        assert [st.address for st in store.snapshot_statuses()] == ["a"]


def test_dispatch_reads_pid_from_stdout_only() -> None:
    with tempfile.TemporaryDirectory() as td:
        common = make_common(td)
        store = StateStore(Path(td) / "out")
        shell = FakeShell()
        shell.pid_outputs["10.9.0.1"] = "4321\n"
        assert shell.wrapper_stderr == SHUTDOWN_NOTICE
        svc = ServiceConfigV1(type="generic", tag_prefix="t", count=1, remote_cmd="./run.sh")

        [st] = CommandDispatcher(shell, FakeProvider(), store, common).dispatch(svc, ["10.9.0.1"])

        assert st.pid == 4321
        assert store.get_status("10.9.0.1", "generic").pid == 4321


def test_dispatch_pid_error_reports_both_streams() -> None:
    with tempfile.TemporaryDirectory() as td:
        common = make_common(td)
        store = StateStore(Path(td) / "out")
        shell = FakeShell()
        shell.pid_outputs["10.9.0.2"] = ""
        svc = ServiceConfigV1(type="generic", tag_prefix="t", count=1, remote_cmd="./run.sh")

        with pytest.raises(DispatchError) as ei:
            CommandDispatcher(shell, FakeProvider(), store, common).dispatch(svc, ["10.9.0.2"])
        err = ei.value.failures[0].error
        assert "pid output is empty" in err
        assert "Shutdown scheduled" in err
        assert store.snapshot_statuses() == []
