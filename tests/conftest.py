"""
Shared pytest fixtures for Telemetry Hub tests.

Provides fixtures for:
- Settings tuned for fast tests
- Redis backbone on fakeredis
- Mock collaborators (command store, device registry, usage limiter)
- Modbus TCP simulator
"""
from typing import Dict
from unittest.mock import AsyncMock

import fakeredis
import fakeredis.aioredis
import pytest
import pytest_asyncio

from telemetry_hub.application.interfaces import InMemoryDeviceRegistry
from telemetry_hub.config import AppSettings, BackboneSettings, CommandSettings
from telemetry_hub.domain.entities.command import DeviceCommand
from telemetry_hub.infrastructure.messaging.redis_streams import MessageBackbone
from telemetry_hub.infrastructure.messaging.topics import TopicDefinition
from tests.factories import DeviceInfoFactory
from tests.simulators import ModbusTCPSimulator


# ============================================================================
# Settings Fixtures
# ============================================================================

@pytest.fixture
def backbone_settings() -> BackboneSettings:
    return BackboneSettings(
        key_prefix="test",
        consumer_name="test-consumer",
        block_ms=50,
        publish_retries=3,
        publish_retry_delay=0.01,
        publish_max_retry_delay=0.05,
        dedup_ttl_seconds=60,
    )


@pytest.fixture
def app_settings(backbone_settings) -> AppSettings:
    return AppSettings(backbone=backbone_settings)


@pytest.fixture
def command_settings() -> CommandSettings:
    return CommandSettings()


# ============================================================================
# Redis Fixtures
# ============================================================================

@pytest.fixture
def redis_server():
    """
    In-memory Redis server.

    Shared by every client a test creates, so a second backbone instance
    sees the same streams (used to simulate a restart).
    """
    return fakeredis.FakeServer()


@pytest_asyncio.fixture
async def make_backbone(app_settings, redis_server):
    """Factory for backbones bound to the shared fake server."""
    created = []

    def factory() -> MessageBackbone:
        backbone = MessageBackbone(
            app_settings,
            client_factory=lambda: fakeredis.aioredis.FakeRedis(server=redis_server, decode_responses=True),
        )
        created.append(backbone)
        return backbone

    yield factory

    for backbone in created:
        await backbone.disconnect_all()


@pytest_asyncio.fixture
async def backbone(make_backbone):
    """Connected backbone with a small topic set provisioned."""
    backbone = make_backbone()
    await backbone.provision_topics([
        TopicDefinition("device.commands", 5),
        TopicDefinition("device.commands.retry", 3),
        TopicDefinition("alarms.created", 5),
        TopicDefinition("telemetry.device.raw", 10),
        TopicDefinition("test.single", 1),
    ])
    return backbone


# ============================================================================
# Collaborator Fixtures
# ============================================================================

class InMemoryCommandStore:
    """Dict-backed command store that behaves like the repository."""

    def __init__(self):
        self.commands: Dict[str, DeviceCommand] = {}
        self.create = AsyncMock(side_effect=self._create)
        self.update = AsyncMock(side_effect=self._update)
        self.get_by_id = AsyncMock(side_effect=self._get_by_id)
        self.list_by_device = AsyncMock(return_value=[])
        self.list_by_user = AsyncMock(return_value=[])
        self.commit = AsyncMock()

    async def _create(self, command: DeviceCommand) -> DeviceCommand:
        self.commands[str(command.id)] = command
        return command

    async def _update(self, command: DeviceCommand) -> DeviceCommand:
        self.commands[str(command.id)] = command
        return command

    async def _get_by_id(self, command_id, tenant_id):
        command = self.commands.get(str(command_id))
        if command is None or command.tenant_id != tenant_id:
            return None
        # Fresh copy, as a new session would load it
        return DeviceCommand(**{f: getattr(command, f) for f in command.__dataclass_fields__})


@pytest.fixture
def command_store() -> InMemoryCommandStore:
    return InMemoryCommandStore()


@pytest.fixture
def device():
    return DeviceInfoFactory(id="device-1", device_key="dev-key-1", tenant_id="tenant-1")


@pytest.fixture
def device_registry(device) -> InMemoryDeviceRegistry:
    return InMemoryDeviceRegistry([device])


@pytest.fixture
def usage_limiter():
    limiter = AsyncMock()
    limiter.check = AsyncMock(return_value=True)
    limiter.record = AsyncMock()
    return limiter


# ============================================================================
# Simulator Fixtures
# ============================================================================

@pytest_asyncio.fixture
async def modbus_simulator():
    """Modbus TCP simulator on a free local port."""
    simulator = ModbusTCPSimulator()
    await simulator.start()
    yield simulator
    await simulator.stop()
