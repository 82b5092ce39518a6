"""
Contracts for the collaborators the hub depends on but does not own.

The device registry and usage limiter live in other services; the hub only
needs the calls below. In-memory implementations are provided for single
process deployments and tests.
"""
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Protocol, runtime_checkable
from uuid import UUID

from ..domain.entities.command import DeviceCommand
from ..domain.entities.telemetry import TelemetryProtocol


@dataclass
class DeviceInfo:
    """What the hub needs to know about a registered device."""
    id: str
    device_key: str
    tenant_id: str
    protocol: TelemetryProtocol

    def __post_init__(self):
        if isinstance(self.protocol, str):
            self.protocol = TelemetryProtocol(self.protocol)


@runtime_checkable
class DeviceRegistry(Protocol):
    """Device lookup by id, optionally scoped to a tenant."""

    async def get_device(self, device_id: str, tenant_id: Optional[str] = None) -> Optional[DeviceInfo]:
        ...


@runtime_checkable
class UsageLimiter(Protocol):
    """Quota check and increment for metered operations."""

    async def check(self, tenant_id: str, user_id: str, resource: str) -> bool:
        ...

    async def record(self, tenant_id: str, user_id: str, resource: str) -> None:
        ...


@runtime_checkable
class CommandStore(Protocol):
    """Command persistence, implemented by CommandRepository."""

    async def create(self, command: DeviceCommand) -> DeviceCommand:
        ...

    async def get_by_id(self, command_id: UUID, tenant_id: str) -> Optional[DeviceCommand]:
        ...

    async def update(self, command: DeviceCommand) -> DeviceCommand:
        ...

    async def list_by_device(self, device_id: str, tenant_id: str, limit: int = 50) -> List[DeviceCommand]:
        ...

    async def list_by_user(self, user_id: str, tenant_id: str, limit: int = 100) -> List[DeviceCommand]:
        ...

    async def commit(self) -> None:
        """Make writes so far visible to other sessions."""
        ...


class InMemoryDeviceRegistry:
    """Registry backed by a dict, filled from local adapter configuration."""

    def __init__(self, devices: Iterable[DeviceInfo] = ()):
        self._devices: Dict[str, DeviceInfo] = {}
        for device in devices:
            self.add(device)

    def add(self, device: DeviceInfo) -> None:
        self._devices[device.id] = device
        # Adapters report telemetry by device key
        self._devices.setdefault(device.device_key, device)

    async def get_device(self, device_id: str, tenant_id: Optional[str] = None) -> Optional[DeviceInfo]:
        device = self._devices.get(device_id)
        if device is None:
            return None
        if tenant_id is not None and device.tenant_id != tenant_id:
            return None
        return device


class UnlimitedUsageLimiter:
    """Limiter that admits everything; used when no quota service is wired in."""

    async def check(self, tenant_id: str, user_id: str, resource: str) -> bool:
        return True

    async def record(self, tenant_id: str, user_id: str, resource: str) -> None:
        return None
