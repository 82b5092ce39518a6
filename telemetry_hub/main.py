"""
Telemetry Hub - Main Entry Point.

Starts the hub process that:
1. Connects to the Redis Streams backbone and provisions the topic set
2. Opens the command database
3. Starts the protocol adapters, publishing their telemetry to the backbone
4. Runs the command execution worker
"""
import asyncio
import logging
import signal
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator, List, Optional

from .adapters.modbus import ModbusAdapter, ModbusDeviceConfig, load_device_configs
from .adapters.mqtt import MQTTAdapter
from .adapters.registry import AdapterRegistry
from .application.interfaces import DeviceInfo, InMemoryDeviceRegistry, UnlimitedUsageLimiter
from .application.services.command_service import CommandService
from .config import AppSettings, get_settings
from .domain.entities.telemetry import TelemetryProtocol
from .infrastructure.database.connection import DatabaseManager
from .infrastructure.database.repositories.command_repository import CommandRepository
from .infrastructure.messaging.redis_streams import MessageBackbone
from .infrastructure.messaging.topics import DEFAULT_TOPICS
from .workers.command_worker import CommandWorker
from .workers.telemetry_publisher import TelemetryPublisher

logger = logging.getLogger(__name__)


class TelemetryHub:
    """
    Process orchestrator.

    Owns the backbone, database, adapters and workers and starts/stops them
    in dependency order.
    """

    def __init__(self, settings: Optional[AppSettings] = None):
        self.settings = settings or get_settings()

        self.backbone = MessageBackbone(self.settings)
        self.database = DatabaseManager(self.settings.database)
        self.device_registry = InMemoryDeviceRegistry()
        self.usage_limiter = UnlimitedUsageLimiter()
        self.adapters = AdapterRegistry()

        self.telemetry_publisher = TelemetryPublisher(
            self.backbone,
            self.device_registry,
            topic=self.settings.telemetry_topic,
        )
        self.command_worker = CommandWorker(
            backbone=self.backbone,
            service_scope=self.command_service,
            device_registry=self.device_registry,
            adapter_registry=self.adapters,
            settings=self.settings.commands,
        )

        self._running = False
        self._shutdown_event = asyncio.Event()

        self._register_adapters()

    def _register_adapters(self) -> None:
        if self.settings.modbus.enabled:
            devices = load_device_configs(self.settings.modbus)
            self._register_modbus_devices(devices)
            self.adapters.register(ModbusAdapter(self.settings.modbus, devices=devices))

        if self.settings.mqtt.enabled:
            self.adapters.register(MQTTAdapter(self.settings.mqtt))

        self.adapters.set_on_telemetry(self.telemetry_publisher)

        if not len(self.adapters):
            logger.warning("No protocol adapters enabled")

    def _register_modbus_devices(self, devices: List[ModbusDeviceConfig]) -> None:
        for device in devices:
            if not device.tenant_id:
                logger.warning(f"Modbus device {device.id} has no tenant; commands cannot target it")
                continue
            self.device_registry.add(DeviceInfo(
                id=device.id,
                device_key=device.device_key,
                tenant_id=device.tenant_id,
                protocol=TelemetryProtocol.MODBUS,
            ))

    @asynccontextmanager
    async def command_service(self) -> AsyncGenerator[CommandService, None]:
        """Unit of work: a CommandService over one database session."""
        async with self.database.session() as session:
            yield CommandService(
                command_store=CommandRepository(session),
                device_registry=self.device_registry,
                usage_limiter=self.usage_limiter,
                backbone=self.backbone,
                settings=self.settings.commands,
            )

    async def start(self) -> None:
        """Start all components."""
        logger.info(f"Starting {self.settings.app_name} v{self.settings.app_version}")
        logger.info(f"Environment: {self.settings.environment}")

        # stop() releases whatever was started if a later step fails
        self._running = True

        await self.backbone.connect()
        if self.settings.backbone.provision_on_start:
            created = await self.backbone.provision_topics(DEFAULT_TOPICS)
            logger.info(f"Provisioned {len(created)} new topic(s)")

        await self.database.init(create_tables=not self.settings.is_production)

        await self.adapters.start_all()
        await self.command_worker.start()

        logger.info(f"{self.settings.app_name} started")

    async def stop(self) -> None:
        """Stop all components in reverse order."""
        if not self._running:
            return

        logger.info(f"Stopping {self.settings.app_name}...")
        self._running = False
        self._shutdown_event.set()

        await self.command_worker.stop()
        await self.adapters.stop_all()
        await self.backbone.disconnect_all()
        await self.database.close()

        logger.info(f"{self.settings.app_name} stopped")

    async def serve_forever(self) -> None:
        """Run until shutdown is requested."""
        await self._shutdown_event.wait()

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    async def health_check(self) -> dict:
        return {
            "running": self._running,
            "backbone": await self.backbone.health_check(),
            "adapters": {
                protocol.value: self.adapters.get(protocol).state.value
                for protocol in self.adapters.protocols()
            },
            "commands": self.command_worker.get_stats(),
            "telemetry": {
                "published": self.telemetry_publisher.published,
                "failed": self.telemetry_publisher.failed,
            },
        }


def setup_signal_handlers(hub: TelemetryHub, loop: asyncio.AbstractEventLoop) -> None:
    """Setup signal handlers for graceful shutdown."""
    def signal_handler():
        logger.info("Received shutdown signal")
        hub.request_shutdown()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, signal_handler)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            signal.signal(sig, lambda s, f: signal_handler())


async def run() -> None:
    hub = TelemetryHub()
    setup_signal_handlers(hub, asyncio.get_running_loop())

    try:
        await hub.start()
        await hub.serve_forever()
    finally:
        await hub.stop()


def main() -> None:
    """Console entry point."""
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()
