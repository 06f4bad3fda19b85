"""Domain-level request contracts shared by multiple layers."""

from __future__ import annotations

from dataclasses import dataclass, field

from .account import AdminRole, DeviceInfo, Location


@dataclass(slots=True)
class ProvisionAccountInput:
    """Validated inputs required to provision an admin account."""

    email: str
    password: str
    first_name: str = ""
    last_name: str = ""
    role: AdminRole = AdminRole.user
    is_super_admin: bool = False


@dataclass(slots=True)
class LoginInput:
    """Credentials plus the client context recorded on the session they open."""

    email: str
    password: str
    device: DeviceInfo = field(default_factory=DeviceInfo)
    location: Location = field(default_factory=Location)

    @property
    def ip_address(self) -> str | None:
        return self.device.ip_address
