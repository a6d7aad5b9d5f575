from __future__ import annotations

import json
import os
import tempfile
import time
from pathlib import Path

import pytest

from fakes import FakeProvider, FakeShell, make_common
from ydyl_deploy.classify import COMPLETION_SENTINEL
from ydyl_deploy.config import DeployConfigV1, ServiceConfigV1
from ydyl_deploy.deploy import resume_sync_v1, rotate_existing_output_dir, run_deploy_v1
from ydyl_deploy.dispatch import DispatchError
from ydyl_deploy.provisioner import ProvisioningError

DONE = ("\n" + COMPLETION_SENTINEL + "\n").encode("utf-8")


def test_rotate_uses_status_file_mtime() -> None:
    with tempfile.TemporaryDirectory() as td:
        out = Path(td) / "output"
        out.mkdir()
        status = out / "script_status.json"
        status.write_text("[]\n", encoding="utf-8")
        ts = time.mktime((2024, 3, 5, 7, 8, 9, 0, 0, -1))
        os.utime(status, (ts, ts))

        archived = rotate_existing_output_dir(out)

        assert archived == Path(td) / "output-20240305-070809"
        assert (archived / "script_status.json").read_text(encoding="utf-8") == "[]\n"
        assert not out.exists()


def test_rotate_falls_back_to_dir_mtime_and_never_overwrites() -> None:
    with tempfile.TemporaryDirectory() as td:
        out = Path(td) / "output"
        ts = time.mktime((2024, 1, 2, 3, 4, 5, 0, 0, -1))
        for _ in range(2):
            out.mkdir()
            (out / "servers.json").write_text("[]\n", encoding="utf-8")
            os.utime(out, (ts, ts))
            rotate_existing_output_dir(out)
        assert (Path(td) / "output-20240102-030405").is_dir()
        assert (Path(td) / "output-20240102-030405.1").is_dir()


def test_rotate_leaves_missing_or_empty_dir_alone() -> None:
    with tempfile.TemporaryDirectory() as td:
        assert rotate_existing_output_dir(Path(td) / "nope") is None
        empty = Path(td) / "empty"
        empty.mkdir()
        assert rotate_existing_output_dir(empty) is None
        assert empty.is_dir()


def test_deploy_end_to_end_with_fakes() -> None:
    with tempfile.TemporaryDirectory() as td:
        common = make_common(td)
        cfg = DeployConfigV1(
            common=common,
            services=(
                ServiceConfigV1(type="generic", ami="ami-1", instance_type="t3.large", tag_prefix="e2e", count=2, remote_cmd="./a.sh"),
                ServiceConfigV1(type="cdk", ami="ami-2", instance_type="m5.xlarge", tag_prefix="e2e", count=0),
                ServiceConfigV1(type="cdk", ami="ami-2", instance_type="m5.xlarge", tag_prefix="e2e", count=1),
            ),
        )
        provider = FakeProvider()
        shell = FakeShell()
        for ip in ("10.0.0.1", "10.0.0.2", "10.0.0.3"):
            shell.log_stages[ip] = [b"", b"working\n" + DONE]
            shell.alive[ip] = [True, False]

        # a stale output dir from a previous run gets archived
        stale = common.resolved_output_dir()
        stale.mkdir(parents=True)
        (stale / "script_status.json").write_text("[]\n", encoding="utf-8")

        done = run_deploy_v1(cfg, provider=provider, shell=shell)

        assert sorted((st.address, st.role, st.state) for st in done) == [
            ("10.0.0.1", "generic", "success"),
            ("10.0.0.2", "generic", "success"),
            ("10.0.0.3", "cdk", "success"),
        ]
        assert [n for _spec, n in provider.launched] == [2, 1]
        assert provider.launched[1][0].image_id == "ami-2"
        assert provider.tags["i-0003"] == ["e2e-cdk-1", "e2e-cdk-1"]

        out = common.resolved_output_dir()
        servers = json.loads((out / "servers.json").read_text(encoding="utf-8"))
        assert servers == [
            {"ip": "10.0.0.1", "serviceType": "generic"},
            {"ip": "10.0.0.2", "serviceType": "generic"},
            {"ip": "10.0.0.3", "serviceType": "cdk"},
        ]
        archived = [p for p in Path(common.log_dir).iterdir() if p.name.startswith("output-")]
        assert len(archived) == 1

        local = Path(common.log_dir) / "10.0.0.3-e2e-cdk-1.log"
        assert local.read_bytes() == b"working\n" + DONE


def test_deploy_empty_address_resolution_is_fatal() -> None:
    with tempfile.TemporaryDirectory() as td:
        common = make_common(td)
        cfg = DeployConfigV1(common=common, services=(ServiceConfigV1(type="generic", tag_prefix="t", count=2, remote_cmd="x"),))
        shell = FakeShell()
        with pytest.raises(ProvisioningError):
            run_deploy_v1(cfg, provider=FakeProvider(resolve_empty=True), shell=shell)
        assert shell.calls == []


def test_deploy_stops_after_a_failed_dispatch_batch() -> None:
    with tempfile.TemporaryDirectory() as td:
        common = make_common(td)
        cfg = DeployConfigV1(
            common=common,
            services=(
                ServiceConfigV1(type="generic", tag_prefix="t", count=2, remote_cmd="./a.sh"),
                ServiceConfigV1(type="generic", tag_prefix="u", count=1, remote_cmd="./b.sh"),
            ),
        )
        provider = FakeProvider()
        shell = FakeShell()
        shell.pid_outputs["10.0.0.2"] = "no pid here"

        with pytest.raises(DispatchError):
            run_deploy_v1(cfg, provider=provider, shell=shell)
        # second service never launched; the successful instance stays resumable
        assert len(provider.launched) == 1

        shell.log_stages["10.0.0.1"] = [DONE]
        shell.alive["10.0.0.1"] = [False]
        done = resume_sync_v1(common, shell=shell)
        assert [(st.address, st.state) for st in done] == [("10.0.0.1", "success")]
