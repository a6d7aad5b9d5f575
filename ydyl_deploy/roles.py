from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Callable, Dict, Optional

from .keys import KeyDerivationError, derive_vault_private_key_hex

if TYPE_CHECKING:
    from .config import CommonConfigV1, ServiceConfigV1


class CommandBuildError(RuntimeError):
    pass


class ServiceType(str, Enum):
    GENERIC = "generic"
    OP = "op"
    CDK = "cdk"
    XJST = "xjst"

    def __str__(self) -> str:
        return str(self.value)

    @classmethod
    def parse(cls, s: Optional[str]) -> "ServiceType":
        t = str(s or "").strip().lower()
        if t == "":
            return cls.GENERIC
        for member in cls:
            if member.value == t:
                return member
        raise ValueError(f"unsupported service type: {s}")


# role -> fn(ordinal, common) -> literal remote command
CommandBuilder = Callable[[int, "CommonConfigV1"], str]

_COMMAND_BUILDERS: Dict[str, CommandBuilder] = {}


def register_command_builder(role: str) -> Callable[[CommandBuilder], CommandBuilder]:
    def deco(fn: CommandBuilder) -> CommandBuilder:
        _COMMAND_BUILDERS[str(role)] = fn
        return fn

    return deco


def command_builder_for(role: str) -> Optional[CommandBuilder]:
    return _COMMAND_BUILDERS.get(str(role))


def _go_bool(b: bool) -> str:
    return "true" if b else "false"


def _l2_pipeline_command(ordinal: int, common: "CommonConfigV1", *, script: str) -> str:
    l2_chain_id = 10000 + int(ordinal)
    try:
        vault_pk = derive_vault_private_key_hex(common.l1_vault_mnemonic, int(ordinal))
    except KeyDerivationError as exc:
        raise CommandBuildError(f"failed to derive L1_VAULT_PRIVATE_KEY: {exc}") from exc
    return (
        " git pull && GIT_SSH_COMMAND='ssh -o StrictHostKeyChecking=no' git submodule update --init --recursive && "
        f"L2_CHAIN_ID={l2_chain_id} "
        f"L1_CHAIN_ID={common.l1_chain_id} "
        f"L1_RPC_URL={common.l1_rpc_url} "
        f"L1_VAULT_PRIVATE_KEY={vault_pk} "
        f"L1_BRIDGE_RELAY_CONTRACT={common.l1_bridge_relay_contract} "
        f"L1_REGISTER_BRIDGE_PRIVATE_KEY={common.l1_register_bridge_private_key} "
        f"DRYRUN={_go_bool(common.dry_run)} "
        f"FORCE_DEPLOY_CDK={_go_bool(common.force_deploy_l2_chain)} "
        f"./{script}"
    )


@register_command_builder(ServiceType.OP.value)
def build_op_command(ordinal: int, common: "CommonConfigV1") -> str:
    return _l2_pipeline_command(ordinal, common, script="op_pipe.sh")


@register_command_builder(ServiceType.CDK.value)
def build_cdk_command(ordinal: int, common: "CommonConfigV1") -> str:
    return _l2_pipeline_command(ordinal, common, script="cdk_pipe.sh")


def build_remote_command(ordinal: int, service: "ServiceConfigV1", common: "CommonConfigV1") -> str:
    """
    Resolve the workload command for one instance (1-based `ordinal` within its role batch).

    A literal `remoteCmd` in the service config always wins. Otherwise the role's registered
    builder is used; roles without one (generic, xjst) require the literal command.
    """
    if service.remote_cmd:
        return str(service.remote_cmd)
    if int(ordinal) <= 0:
        raise CommandBuildError("ordinal must start at 1")
    fn = command_builder_for(service.type)
    if fn is None:
        raise CommandBuildError(f"service={service.type} requires an explicit remoteCmd")
    return fn(int(ordinal), common)
