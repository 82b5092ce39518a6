"""
Register-polling adapter for Modbus TCP/RTU field devices.

Each configured device gets its own connection and its own poll task. A poll
cycle reads every register independently: a register that cannot be read is
logged and left out of the record, the rest are still emitted.
"""
import asyncio
import logging
import struct
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional

from ...config import ModbusSettings
from ...domain.entities.base import utcnow
from ...domain.entities.telemetry import (
    StandardTelemetry,
    TelemetryProtocol,
    as_number,
    coerce_timestamp,
)
from ...domain.exceptions import AdapterConnectionError, CommandDeliveryError, RegisterReadError
from ...infrastructure.retry import retry_with_backoff
from ..base import ProtocolAdapter
from .client import ModbusClient, ModbusExceptionResponse
from .config import ModbusDeviceConfig, load_device_configs
from .registers import RegisterDefinition, RegisterType, Value

logger = logging.getLogger(__name__)

# Failures that make a single register unreadable for this cycle
READ_ERRORS = (ModbusExceptionResponse, ConnectionError, OSError, asyncio.TimeoutError, ValueError, struct.error)

CONNECT_ERRORS = (ConnectionError, OSError, asyncio.TimeoutError)


def _table_for(command: Mapping) -> str:
    """Register table implied by a command's ``function`` name."""
    function = str(command.get("function") or "").lower()
    return RegisterType.COIL.value if "coil" in function else RegisterType.HOLDING.value


@dataclass
class PollStats:
    """Per-device polling counters."""
    cycles: int = 0
    failed_reads: int = 0
    last_poll_at: Optional[datetime] = None
    last_error: Optional[str] = None


class ModbusAdapter(ProtocolAdapter):
    """
    Polls Modbus devices on their configured intervals.
    """

    protocol = TelemetryProtocol.MODBUS
    supports_commands = True

    def __init__(
        self,
        settings: Optional[ModbusSettings] = None,
        devices: Optional[List[ModbusDeviceConfig]] = None,
        client_factory: Callable[[ModbusDeviceConfig], ModbusClient] = ModbusClient,
    ):
        super().__init__()
        self.settings = settings or ModbusSettings()
        self._configured_devices = devices
        self._client_factory = client_factory

        self._devices: Dict[str, ModbusDeviceConfig] = {}
        self._clients: Dict[str, ModbusClient] = {}
        self._poll_tasks: Dict[str, asyncio.Task] = {}
        self._stats: Dict[str, PollStats] = {}
        self._shutdown_event = asyncio.Event()

    @property
    def devices(self) -> List[ModbusDeviceConfig]:
        return list(self._devices.values())

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def _on_start(self) -> None:
        self._shutdown_event.clear()

        devices = self._configured_devices
        if devices is None:
            devices = load_device_configs(self.settings)

        if not devices:
            logger.warning("No Modbus devices configured")
            return

        # Connect everything before polling anything
        for device in devices:
            await self._connect_device(device)

        for device in devices:
            self._poll_tasks[device.id] = asyncio.create_task(
                self._poll_loop(device),
                name=f"modbus_poll_{device.id}",
            )
            logger.info(f"Polling started for {device.name} (interval: {device.poll_interval}ms)")

        logger.info(f"Modbus adapter started with {len(devices)} devices")

    async def _connect_device(self, device: ModbusDeviceConfig) -> None:
        client = self._client_factory(device)
        try:
            await retry_with_backoff(
                client.connect,
                attempts=self.settings.connect_retries,
                base_delay=self.settings.connect_retry_delay,
                max_delay=self.settings.connect_max_retry_delay,
                retry_on=CONNECT_ERRORS,
                description=f"Connect to Modbus device {device.name} ({device.address})",
            )
        except CONNECT_ERRORS as e:
            await client.close()
            raise AdapterConnectionError(
                self.protocol.value, f"Failed to connect to {device.name} ({device.address}): {e}"
            ) from e

        self._devices[device.id] = device
        self._clients[device.id] = client
        self._stats[device.id] = PollStats()

    async def _on_stop(self) -> None:
        self._shutdown_event.set()

        # Poll loops exit at their next wait; an in-flight read finishes first
        tasks = list(self._poll_tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._poll_tasks.clear()

        for device_id, client in list(self._clients.items()):
            try:
                await client.close()
            except Exception as e:
                logger.error(f"Failed to disconnect {device_id}: {e}")
        self._clients.clear()
        self._devices.clear()

    # =========================================================================
    # Polling
    # =========================================================================

    async def _poll_loop(self, device: ModbusDeviceConfig) -> None:
        logger.debug(f"Starting poll loop for {device.id}")

        while not self._shutdown_event.is_set():
            try:
                await self.poll_device(device.id)
            except Exception as e:
                logger.error(f"Polling error for {device.name}: {e}")

            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=device.poll_interval_seconds,
                )
                # Shutdown event was set
                break
            except asyncio.TimeoutError:
                pass

        logger.debug(f"Poll loop ended for {device.id}")

    async def poll_device(self, device_id: str) -> Optional[StandardTelemetry]:
        """
        Run one poll cycle for a device and emit the result.

        Returns:
            The emitted record, or None if the device is not connected.
        """
        device = self._devices.get(device_id)
        client = self._clients.get(device_id)
        if device is None or client is None:
            return None

        stats = self._stats[device_id]
        data: Dict[str, Value] = {}
        units: Dict[str, str] = {}

        for register in device.registers:
            try:
                data[register.name] = await self._read_register(device, client, register)
            except RegisterReadError as e:
                stats.failed_reads += 1
                stats.last_error = str(e)
                logger.error(str(e))
                continue
            if register.unit:
                units[register.name] = register.unit

        stats.cycles += 1
        stats.last_poll_at = utcnow()

        telemetry = self.parse({
            "deviceId": device.id,
            "deviceKey": device.device_key,
            "tenantId": device.tenant_id,
            "name": device.name,
            "data": data,
            "units": units,
            "timestamp": stats.last_poll_at,
        })
        await self.emit(telemetry)
        return telemetry

    async def _read_register(
        self,
        device: ModbusDeviceConfig,
        client: ModbusClient,
        register: RegisterDefinition,
    ) -> Value:
        try:
            return await client.read_register(register)
        except READ_ERRORS as e:
            raise RegisterReadError(device.name, register.name, str(e) or type(e).__name__) from e

    def get_polling_stats(self) -> Dict[str, Any]:
        return {
            device_id: {
                "cycles": stats.cycles,
                "failed_reads": stats.failed_reads,
                "last_poll_at": stats.last_poll_at.isoformat() if stats.last_poll_at else None,
                "last_error": stats.last_error,
                "polling": device_id in self._poll_tasks and not self._poll_tasks[device_id].done(),
            }
            for device_id, stats in self._stats.items()
        }

    # =========================================================================
    # Parsing
    # =========================================================================

    def parse(self, raw_payload: Any, context: Optional[Dict[str, Any]] = None) -> StandardTelemetry:
        """
        Build a record from one poll result.

        The payload is the dict produced by a poll cycle (``deviceKey``,
        ``name``, ``data``, ``units``, ``timestamp``). Anything missing is
        left unset.
        """
        context = context or {}
        payload = raw_payload if isinstance(raw_payload, Mapping) else {}
        data = payload.get("data")
        if not isinstance(data, Mapping):
            data = {}

        device_key = payload.get("deviceKey") or context.get("device_key") or "unknown"
        metadata: Dict[str, Any] = {"deviceName": payload.get("name") or str(device_key)}
        if isinstance(payload.get("units"), Mapping) and payload["units"]:
            metadata["units"] = dict(payload["units"])

        return StandardTelemetry(
            device_id=str(payload.get("deviceId") or device_key),
            device_key=str(device_key),
            protocol=self.protocol,
            tenant_id=payload.get("tenantId") or context.get("tenant_id"),
            data=dict(data),
            temperature=as_number(data.get("temperature")),
            humidity=as_number(data.get("humidity")),
            pressure=as_number(data.get("pressure")),
            timestamp=coerce_timestamp(payload.get("timestamp")),
            metadata=metadata,
            raw_payload=dict(payload) if payload else raw_payload,
        )

    # =========================================================================
    # Commands
    # =========================================================================

    def _find_device(self, device_id: str) -> Optional[ModbusDeviceConfig]:
        device = self._devices.get(device_id)
        if device is not None:
            return device
        for candidate in self._devices.values():
            if candidate.device_key == device_id:
                return candidate
        return None

    async def send_command(self, device_id: str, command: Dict[str, Any]) -> None:
        """
        Write a holding register or coil.

        The command (or its ``params``) carries ``address``, ``value`` and
        ``registerType`` (``holding`` or ``coil``, default ``holding``).
        Without ``registerType`` a ``function`` naming a coil write
        (``write_coil``) selects the coil table.

        Raises:
            CommandDeliveryError: If the device is unknown, not connected,
                the command is malformed or the write fails.
        """
        device = self._find_device(device_id)
        if device is None:
            raise CommandDeliveryError(device_id, f"Modbus device not found: {device_id}")

        client = self._clients.get(device.id)
        if client is None or not client.is_connected:
            raise CommandDeliveryError(device_id, f"Modbus client not connected: {device_id}")

        write = command.get("params") if isinstance(command.get("params"), Mapping) else command
        try:
            address = int(write["address"])
            value = write["value"]
            if value is None:
                raise ValueError("value is required")
            register_type = RegisterType(str(write.get("registerType") or _table_for(command)).lower())
        except (KeyError, TypeError, ValueError) as e:
            raise CommandDeliveryError(device_id, f"Invalid Modbus command: {e}") from e

        try:
            if register_type == RegisterType.HOLDING:
                await client.write_register(address, int(value))
            elif register_type == RegisterType.COIL:
                await client.write_coil(address, bool(value))
            else:
                raise CommandDeliveryError(
                    device_id, f"Cannot write to {register_type.value} registers"
                )
        except READ_ERRORS as e:
            logger.error(f"Failed to send command to {device_id}: {e}")
            raise CommandDeliveryError(device_id, f"Write failed: {e}") from e

        logger.info(
            f"Command sent to {device.name}: write {value} to {register_type.value} {address}"
        )
