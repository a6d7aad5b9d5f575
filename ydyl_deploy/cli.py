from __future__ import annotations

import argparse
import signal
import sys
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from .cancel import OperationCancelled, new_cancel_event
from .config import ConfigError, load_config_from_file
from .connectivity import wait_ssh_ready
from .deploy import resume_sync_v1, run_deploy_v1
from .keys import vault_identity_v1
from .provisioner import Ec2ProviderV1
from .restore import restore
from .run_logger import RunLoggerV1
from .ssh_runner import ParamikoShellV1

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CANCELLED = 130


def _install_signal_handlers(cancel: threading.Event) -> Dict[int, Any]:
    def _handler(signum: int, _frame: Any) -> None:
        cancel.set()

    previous: Dict[int, Any] = {}
    for sig in (signal.SIGINT, signal.SIGTERM):
        previous[sig] = signal.signal(sig, _handler)
    return previous


def _split_ips(values: Optional[List[str]]) -> Optional[List[str]]:
    if not values:
        return None
    out: List[str] = []
    for v in values:
        out.extend(x.strip() for x in str(v).split(",") if x.strip())
    return out


def _logger_for(log_dir: str) -> RunLoggerV1:
    return RunLoggerV1(out_dir=Path(log_dir).expanduser())


def _cmd_deploy(args: argparse.Namespace, cancel: threading.Event) -> int:
    cfg = load_config_from_file(args.config, log_dir=args.log_dir)
    logger = _logger_for(cfg.common.log_dir)
    shell = ParamikoShellV1()
    try:
        run_deploy_v1(cfg, provider=Ec2ProviderV1(region=cfg.common.region), shell=shell, logger=logger, cancel=cancel)
    finally:
        shell.close()
    logger.log("all services finished")
    return EXIT_OK


def _cmd_restore(args: argparse.Namespace, cancel: threading.Event) -> int:
    cfg = load_config_from_file(args.config, log_dir=args.log_dir)
    logger = _logger_for(cfg.common.log_dir)
    shell = ParamikoShellV1()
    try:
        restore(cfg.common, shell, only_addresses=_split_ips(args.ips), logger=logger, cancel=cancel)
    finally:
        shell.close()
    logger.log("deploy-restore finished")
    return EXIT_OK


def _cmd_sync(args: argparse.Namespace, cancel: threading.Event) -> int:
    cfg = load_config_from_file(args.config, log_dir=args.log_dir)
    logger = _logger_for(cfg.common.log_dir)
    shell = ParamikoShellV1()
    try:
        resume_sync_v1(cfg.common, shell=shell, logger=logger, cancel=cancel)
    finally:
        shell.close()
    logger.log("log and script status sync finished")
    return EXIT_OK


def _cmd_waitssh(args: argparse.Namespace, cancel: threading.Event) -> int:
    shell = ParamikoShellV1()
    try:
        attempt = wait_ssh_ready(shell, args.ip, args.user, args.key, cancel=cancel)
    finally:
        shell.close()
    print(f"ssh ready on {args.ip} (attempt {attempt})")
    return EXIT_OK


def _cmd_derive_key(args: argparse.Namespace, _cancel: threading.Event) -> int:
    cfg = load_config_from_file(args.config)
    if not cfg.common.l1_vault_mnemonic:
        raise ConfigError("l1VaultMnemonic is not set")
    ident = vault_identity_v1(cfg.common.l1_vault_mnemonic, int(args.index))
    print(ident.address)
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="ydyl-deploy", description="Provision a fleet, launch workloads, mirror their logs.")
    sub = ap.add_subparsers(dest="command", required=True)

    p = sub.add_parser("deploy", help="Fresh deploy: launch instances, dispatch commands, sync logs")
    p.add_argument("-f", "--config", required=True, help="Path to deploy config yaml")
    p.add_argument("--log-dir", default=None, help="Override logDir from the config")
    p.set_defaults(fn=_cmd_deploy)

    p = sub.add_parser("deploy-restore", help="Re-launch recorded commands on the existing fleet, then sync")
    p.add_argument("-f", "--config", required=True, help="Path to deploy config yaml")
    p.add_argument("--log-dir", default=None, help="Override logDir from the config")
    p.add_argument(
        "--ips",
        action="append",
        default=None,
        help="Only restore these IPs (comma-separated or repeated). Default: all recorded instances",
    )
    p.set_defaults(fn=_cmd_restore)

    p = sub.add_parser("sync", help="Resume log and status sync from persisted state (no redispatch)")
    p.add_argument("-f", "--config", required=True, help="Path to deploy config yaml")
    p.add_argument("--log-dir", default=None, help="Override logDir from the config")
    p.set_defaults(fn=_cmd_sync)

    p = sub.add_parser("waitssh", help="Wait until a host accepts ssh")
    p.add_argument("--ip", required=True)
    p.add_argument("--user", default="ubuntu")
    p.add_argument("--key", required=True, help="SSH private key path")
    p.set_defaults(fn=_cmd_waitssh)

    p = sub.add_parser("derive-key", help="Print the vault address derived for an instance ordinal")
    p.add_argument("-f", "--config", required=True, help="Path to deploy config yaml")
    p.add_argument("--index", required=True, type=int)
    p.set_defaults(fn=_cmd_derive_key)
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    cancel = new_cancel_event()
    previous = _install_signal_handlers(cancel)
    try:
        return int(args.fn(args, cancel))
    except OperationCancelled as exc:
        print(f"cancelled: {exc}", file=sys.stderr)
        return EXIT_CANCELLED
    except Exception as exc:
        # provider (botocore) errors arrive unwrapped; report them the same way
        print(f"error: {str(exc) or exc.__class__.__name__}", file=sys.stderr)
        return EXIT_ERROR
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


if __name__ == "__main__":
    raise SystemExit(main())
