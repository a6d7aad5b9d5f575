from __future__ import annotations

# Public API surface (v1): keep stable imports for tests and downstream tools.

from .cancel import OperationCancelled, new_cancel_event
from .classify import GenericLogClassifierV1, StructuredLogClassifierV1, classify_log_text, register_classifier
from .config import CommonConfigV1, ConfigError, DeployConfigV1, ServiceConfigV1, load_config_from_file
from .connectivity import ConnectivityError, wait_all_ready, wait_ssh_ready
from .deploy import resume_sync_v1, rotate_existing_output_dir, run_deploy_v1
from .dispatch import CommandDispatcher, DispatchError, InstanceFailureV1
from .keys import KeyDerivationError, derive_vault_private_key_hex, vault_identity_v1
from .log_sync import LogSyncMonitor, ScriptFailedError, fetch_remote_log_delta
from .provisioner import ComputeProvider, Ec2ProviderV1, InstanceSpecV1, Provisioner, ProvisioningError
from .remote_cmd import RemoteCommandError
from .restore import RestoreError, Restorer, restore
from .roles import CommandBuildError, ServiceType, build_remote_command, register_command_builder
from .run_logger import RunLoggerV1
from .ssh_runner import ParamikoShellV1, RemoteShell, SSHError
from .state_store import InstanceRecordV1, RunStatusV1, StateStore, StateStoreError

__all__ = [
    "CommandBuildError",
    "CommandDispatcher",
    "CommonConfigV1",
    "ComputeProvider",
    "ConfigError",
    "ConnectivityError",
    "DeployConfigV1",
    "DispatchError",
    "Ec2ProviderV1",
    "GenericLogClassifierV1",
    "InstanceFailureV1",
    "InstanceRecordV1",
    "InstanceSpecV1",
    "KeyDerivationError",
    "LogSyncMonitor",
    "OperationCancelled",
    "ParamikoShellV1",
    "Provisioner",
    "ProvisioningError",
    "RemoteCommandError",
    "RemoteShell",
    "RestoreError",
    "Restorer",
    "RunLoggerV1",
    "RunStatusV1",
    "SSHError",
    "ScriptFailedError",
    "ServiceConfigV1",
    "ServiceType",
    "StateStore",
    "StateStoreError",
    "StructuredLogClassifierV1",
    "build_remote_command",
    "classify_log_text",
    "derive_vault_private_key_hex",
    "fetch_remote_log_delta",
    "load_config_from_file",
    "new_cancel_event",
    "register_classifier",
    "register_command_builder",
    "restore",
    "resume_sync_v1",
    "rotate_existing_output_dir",
    "run_deploy_v1",
    "vault_identity_v1",
    "wait_all_ready",
    "wait_ssh_ready",
]
