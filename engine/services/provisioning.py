# engine/services/provisioning.py

"""
Boundary to the image and infrastructure subsystems.

Cumulus never builds images or creates networks. It asks for an image
reference and for the network/identity handles a worker needs, and
fails the launch if either is missing.
"""

from dataclasses import dataclass
from typing import Optional, Protocol, Tuple

from config.settings import Settings, get_settings
from engine.exceptions import FatalLaunchError


@dataclass(frozen=True)
class CapacityHandles:
    subnets: Tuple[str, ...]
    security_groups: Tuple[str, ...] = ()
    assign_public_ip: bool = True
    execution_role_arn: Optional[str] = None
    task_role_arn: Optional[str] = None
    log_group: Optional[str] = None

    def network_configuration(self) -> dict:
        config = {
            "subnets": list(self.subnets),
            "assignPublicIp": "ENABLED" if self.assign_public_ip else "DISABLED",
        }
        if self.security_groups:
            config["securityGroups"] = list(self.security_groups)
        return {"awsvpcConfiguration": config}


class ImageProvider(Protocol):
    def resolve_image(self, plan) -> str:
        ...


class InfraProvisioner(Protocol):
    def ensure_capacity(self, plan) -> CapacityHandles:
        ...


class StaticImageProvider:
    """Uses the image named by the plan, or WORKER_IMAGE."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def resolve_image(self, plan) -> str:
        image = plan.image or self.settings.WORKER_IMAGE
        if not image:
            raise FatalLaunchError("No worker image configured (set WORKER_IMAGE or plan image)")
        return image


class SettingsProvisioner:
    """Reads pre-provisioned subnets, security groups and roles from Settings."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def ensure_capacity(self, plan) -> CapacityHandles:
        s = self.settings
        if not s.SUBNET_IDS:
            raise FatalLaunchError("No subnets configured (set SUBNETS)")
        if not s.EXECUTION_ROLE_ARN:
            raise FatalLaunchError("No task execution role configured (set EXECUTION_ROLE_ARN)")

        return CapacityHandles(
            subnets=tuple(s.SUBNET_IDS),
            security_groups=tuple(s.SECURITY_GROUP_IDS),
            assign_public_ip=s.ASSIGN_PUBLIC_IP,
            execution_role_arn=s.EXECUTION_ROLE_ARN,
            task_role_arn=s.TASK_ROLE_ARN,
            log_group=s.LOG_GROUP,
        )
