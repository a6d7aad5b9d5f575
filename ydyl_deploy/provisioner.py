from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List, Optional, Protocol, Sequence

import boto3

from .config import CommonConfigV1, ServiceConfigV1
from .run_logger import RunLoggerV1


class ProvisioningError(RuntimeError):
    pass


@dataclass(frozen=True)
class InstanceSpecV1:
    image_id: str
    instance_type: str
    security_group_id: str
    key_name: str
    disk_size_gib: int

    @staticmethod
    def for_service(service: ServiceConfigV1, common: CommonConfigV1) -> "InstanceSpecV1":
        return InstanceSpecV1(
            image_id=str(service.ami),
            instance_type=str(service.instance_type),
            security_group_id=str(common.security_group_id),
            key_name=str(common.key_name),
            disk_size_gib=int(common.disk_size_gib),
        )


class ComputeProvider(Protocol):
    def launch(self, spec: InstanceSpecV1, count: int) -> List[str]:
        ...

    def await_running(self, instance_ids: Sequence[str]) -> None:
        ...

    def public_addresses(self, instance_ids: Sequence[str]) -> List[str]:
        ...

    def tag(self, instance_id: str, name: str) -> None:
        ...

    def find_by_address(self, address: str) -> str:
        ...


class Ec2ProviderV1:
    """
    ComputeProvider over the EC2 API. Credentials come from the standard boto3 chain.
    """

    def __init__(self, *, region: str, client: Any = None):
        self.region = str(region)
        self.ec2 = client if client is not None else boto3.client("ec2", region_name=self.region or None)

    def launch(self, spec: InstanceSpecV1, count: int) -> List[str]:
        params: dict = {
            "ImageId": spec.image_id,
            "InstanceType": spec.instance_type,
            "MinCount": int(count),
            "MaxCount": int(count),
            "KeyName": spec.key_name,
            "SecurityGroupIds": [spec.security_group_id],
            # the remote safety shutdown then also releases the instance
            "InstanceInitiatedShutdownBehavior": "terminate",
        }
        if int(spec.disk_size_gib) > 0:
            params["BlockDeviceMappings"] = [
                {
                    "DeviceName": "/dev/sda1",
                    "Ebs": {"VolumeSize": int(spec.disk_size_gib), "VolumeType": "gp3", "DeleteOnTermination": True},
                }
            ]
        resp = self.ec2.run_instances(**params)
        return [str(inst["InstanceId"]) for inst in resp.get("Instances", [])]

    def await_running(self, instance_ids: Sequence[str]) -> None:
        if not instance_ids:
            return
        waiter = self.ec2.get_waiter("instance_running")
        waiter.wait(InstanceIds=list(instance_ids), WaiterConfig={"Delay": 5, "MaxAttempts": 120})

    def public_addresses(self, instance_ids: Sequence[str]) -> List[str]:
        if not instance_ids:
            return []
        resp = self.ec2.describe_instances(InstanceIds=list(instance_ids))
        by_id = {}
        for r in resp.get("Reservations", []):
            for inst in r.get("Instances", []):
                ip = inst.get("PublicIpAddress")
                if ip:
                    by_id[str(inst["InstanceId"])] = str(ip)
        # keep launch order
        return [by_id[i] for i in instance_ids if i in by_id]

    def tag(self, instance_id: str, name: str) -> None:
        self.ec2.create_tags(Resources=[str(instance_id)], Tags=[{"Key": "Name", "Value": str(name)}])

    def find_by_address(self, address: str) -> str:
        resp = self.ec2.describe_instances(Filters=[{"Name": "ip-address", "Values": [str(address)]}])
        for r in resp.get("Reservations", []):
            for inst in r.get("Instances", []):
                return str(inst["InstanceId"])
        raise ProvisioningError(f"no instance found with public ip {address}")


class Provisioner:
    def __init__(self, provider: ComputeProvider, common: CommonConfigV1, *, logger: Optional[RunLoggerV1] = None):
        self.provider = provider
        self.common = common
        self.logger = logger

    def launch_batch(self, service: ServiceConfigV1, count: Optional[int] = None) -> List[str]:
        n = int(service.count if count is None else count)
        if n <= 0:
            return []
        ids = self.provider.launch(InstanceSpecV1.for_service(service, self.common), n)
        if len(ids) != n:
            raise ProvisioningError(f"service={service.type}: requested {n} instances, provider returned {len(ids)}")
        for i, instance_id in enumerate(ids, start=1):
            self.provider.tag(instance_id, service.instance_name(i))
        if self.logger is not None:
            self.logger.event("instances_launched", service=service.type, count=n, instance_ids=list(ids))
        return ids

    def await_running(self, instance_ids: Sequence[str]) -> None:
        self.provider.await_running(list(instance_ids))

    def resolve_addresses(self, instance_ids: Sequence[str]) -> List[str]:
        addrs = self.provider.public_addresses(list(instance_ids))
        if not addrs:
            raise ProvisioningError(f"no public address resolved for instances {list(instance_ids)}")
        if self.logger is not None:
            self.logger.event("addresses_resolved", instance_ids=list(instance_ids), ips=list(addrs))
        return addrs
