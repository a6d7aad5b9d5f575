from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .roles import ServiceType


class ConfigError(RuntimeError):
    pass


_DURATION_UNITS_S = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ns|us|µs|ms|s|m|h)")


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    t = str(value).strip().lower()
    if t in ("true", "yes", "1", "on"):
        return True
    if t in ("false", "no", "0", "off", ""):
        return False
    raise ValueError(f"not a boolean: {value!r}")


def parse_duration_s(value: Any) -> float:
    """
    Accepts Go-style duration strings ("90m", "2h30m", "1.5h") or a plain number of seconds.
    """
    if value is None or value == "":
        return 0.0
    if isinstance(value, bool):
        raise ConfigError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    try:
        return float(text)
    except ValueError:
        pass
    pos = 0
    total = 0.0
    for m in _DURATION_PART_RE.finditer(text):
        if m.start() != pos:
            break
        total += float(m.group(1)) * _DURATION_UNITS_S[m.group(2)]
        pos = m.end()
    if pos == 0 or pos != len(text):
        raise ConfigError(f"invalid duration: {value!r}")
    return total


@dataclass(frozen=True)
class ServiceConfigV1:
    type: str
    ami: str = ""
    instance_type: str = ""
    tag_prefix: str = ""
    count: int = 0
    remote_cmd: str = ""

    def instance_name(self, ordinal: int) -> str:
        return f"{self.tag_prefix}-{self.type}-{int(ordinal)}"

    def check_valid(self) -> None:
        try:
            ServiceType.parse(self.type)
        except ValueError as exc:
            raise ConfigError(str(exc)) from exc
        if int(self.count) < 0:
            raise ConfigError(f"service {self.type}: count must be >= 0")
        if self.type == ServiceType.XJST.value and int(self.count) % 4 != 0:
            raise ConfigError("xjst service count must be divisible by 4")


@dataclass(frozen=True)
class CommonConfigV1:
    # compute provider
    region: str = ""
    security_group_id: str = ""
    disk_size_gib: int = 0

    # run + ssh
    run_duration_s: float = 0.0
    ssh_user: str = "ubuntu"
    ssh_key_dir: str = ""
    key_name: str = ""
    log_dir: str = "./logs"
    output_dir: str = ""

    # chain parameters interpolated into role commands
    l1_chain_id: str = ""
    l1_rpc_url: str = ""
    l1_vault_mnemonic: str = field(default="", repr=False)
    l1_bridge_relay_contract: str = ""
    l1_register_bridge_private_key: str = field(default="", repr=False)
    dry_run: bool = False
    force_deploy_l2_chain: bool = False

    # engine tuning
    max_concurrency: int = 0
    sync_interval_s: float = 5.0

    def ssh_key_path(self) -> str:
        key_dir = str(self.ssh_key_dir or "").strip() or "~/.ssh"
        return str(Path(key_dir).expanduser() / f"{self.key_name}.pem")

    def resolved_output_dir(self) -> Path:
        if str(self.output_dir or "").strip():
            return Path(self.output_dir).expanduser()
        return Path(self.log_dir).expanduser() / "output"

    def run_duration_minutes(self) -> int:
        return int(float(self.run_duration_s) // 60)

    def workers_for(self, n: int) -> int:
        n = max(1, int(n))
        bound = int(self.max_concurrency)
        return min(n, bound) if bound > 0 else n

    def with_log_dir(self, log_dir: str) -> "CommonConfigV1":
        return replace(self, log_dir=str(log_dir))


@dataclass(frozen=True)
class DeployConfigV1:
    common: CommonConfigV1
    services: Tuple[ServiceConfigV1, ...] = ()

    def check_valid(self) -> None:
        if float(self.common.run_duration_s) <= 0:
            raise ConfigError("runDuration must be > 0 (it bounds the remote safety shutdown)")
        if float(self.common.sync_interval_s) <= 0:
            raise ConfigError("syncIntervalS must be > 0")
        if int(self.common.max_concurrency) < 0:
            raise ConfigError("maxConcurrency must be >= 0")
        for s in self.services:
            s.check_valid()

    def with_log_dir(self, log_dir: str) -> "DeployConfigV1":
        return replace(self, common=self.common.with_log_dir(log_dir))


# yaml key -> (dataclass field, converter)
_COMMON_KEYS: Dict[str, Tuple[str, Any]] = {
    "region": ("region", str),
    "securityGroupId": ("security_group_id", str),
    "diskSizeGiB": ("disk_size_gib", int),
    "runDuration": ("run_duration_s", parse_duration_s),
    "sshUser": ("ssh_user", str),
    "sshKeyDir": ("ssh_key_dir", str),
    "keyName": ("key_name", str),
    "logDir": ("log_dir", str),
    "outputDir": ("output_dir", str),
    "l1ChainId": ("l1_chain_id", str),
    "l1RpcUrl": ("l1_rpc_url", str),
    "l1VaultMnemonic": ("l1_vault_mnemonic", str),
    "l1BridgeRelayContract": ("l1_bridge_relay_contract", str),
    "l1RegisterBridgePrivateKey": ("l1_register_bridge_private_key", str),
    "dryRun": ("dry_run", _as_bool),
    "forceDeployL2Chain": ("force_deploy_l2_chain", _as_bool),
    "maxConcurrency": ("max_concurrency", int),
    "syncIntervalS": ("sync_interval_s", float),
}

_SERVICE_KEYS: Dict[str, Tuple[str, Any]] = {
    "ami": ("ami", str),
    "instanceType": ("instance_type", str),
    "tagPrefix": ("tag_prefix", str),
    "count": ("count", int),
    "remoteCmd": ("remote_cmd", str),
}


def _convert(obj: Dict[str, Any], table: Dict[str, Tuple[str, Any]], *, where: str) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key, (attr, conv) in table.items():
        if key not in obj or obj[key] is None:
            continue
        try:
            out[attr] = conv(obj[key])
        except ConfigError:
            raise
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"{where}.{key}: {exc}") from exc
    return out


def deploy_config_from_obj(obj: Any) -> DeployConfigV1:
    if obj is None:
        obj = {}
    if not isinstance(obj, dict):
        raise ConfigError("config root must be a mapping")
    common = CommonConfigV1(**_convert(obj, _COMMON_KEYS, where="config"))

    raw_services = obj.get("services") or []
    if not isinstance(raw_services, list):
        raise ConfigError("config.services must be a list")
    services: List[ServiceConfigV1] = []
    for i, row in enumerate(raw_services):
        if not isinstance(row, dict):
            raise ConfigError(f"config.services[{i}] must be a mapping")
        try:
            stype = ServiceType.parse(row.get("type"))
        except ValueError as exc:
            raise ConfigError(f"config.services[{i}].type: {exc}") from exc
        services.append(ServiceConfigV1(type=stype.value, **_convert(row, _SERVICE_KEYS, where=f"config.services[{i}]")))

    cfg = DeployConfigV1(common=common, services=tuple(services))
    cfg.check_valid()
    return cfg


def load_config_from_file(path: str, *, log_dir: Optional[str] = None) -> DeployConfigV1:
    p = Path(str(path)).expanduser()
    if not p.exists():
        raise ConfigError(f"config file missing: {p}")
    try:
        obj = yaml.safe_load(p.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"failed to parse {p}: {exc}") from exc
    cfg = deploy_config_from_obj(obj)
    if log_dir:
        cfg = cfg.with_log_dir(log_dir)
    return cfg
