"""
Protocol adapter contract.

An adapter owns the connections for one wire protocol, turns native payloads
into StandardTelemetry and hands each record to the telemetry sink. Adapters
that can talk back to devices set ``supports_commands`` and override
``send_command``.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from ..domain.entities.telemetry import StandardTelemetry, TelemetryProtocol
from ..domain.exceptions import AdapterConnectionError, CommandDeliveryError

logger = logging.getLogger(__name__)


TelemetrySink = Callable[[StandardTelemetry], Awaitable[None]]


class AdapterState(str, Enum):
    """Adapter lifecycle state."""
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class ProtocolAdapter(ABC):
    """
    Base class for protocol adapters.

    Subclasses implement ``_on_start``/``_on_stop`` and ``parse``; the base
    class owns the state transitions so a failed start never leaves the
    adapter half running.
    """

    protocol: TelemetryProtocol
    supports_commands: bool = False

    def __init__(self):
        self._state = AdapterState.STOPPED
        self._on_telemetry: Optional[TelemetrySink] = None

        # Stats
        self.records_emitted = 0
        self.sink_errors = 0

    @property
    def state(self) -> AdapterState:
        return self._state

    @state.setter
    def state(self, value: AdapterState) -> None:
        if self._state != value:
            logger.debug(f"{self.protocol.value} adapter state: {self._state.value} -> {value.value}")
            self._state = value

    @property
    def is_running(self) -> bool:
        return self._state == AdapterState.RUNNING

    def set_on_telemetry(self, callback: TelemetrySink) -> None:
        """Set callback for telemetry records."""
        self._on_telemetry = callback

    async def start(self) -> None:
        """
        Acquire connections and begin ingestion.

        Raises:
            AdapterConnectionError: If the adapter cannot reach its devices or
                broker. Anything opened so far is released first.
        """
        if self._state != AdapterState.STOPPED:
            logger.warning(f"{self.protocol.value} adapter already {self._state.value}")
            return

        self.state = AdapterState.STARTING
        try:
            await self._on_start()
        except Exception as e:
            logger.error(f"Failed to start {self.protocol.value} adapter: {e}")
            try:
                await self._on_stop()
            except Exception as cleanup_error:
                logger.warning(f"Error releasing {self.protocol.value} adapter resources: {cleanup_error}")
            self.state = AdapterState.STOPPED

            if isinstance(e, AdapterConnectionError):
                raise
            if isinstance(e, (ConnectionError, OSError, asyncio.TimeoutError)):
                raise AdapterConnectionError(self.protocol.value, str(e)) from e
            raise

        self.state = AdapterState.RUNNING
        logger.info(f"{self.protocol.value} adapter started")

    async def stop(self) -> None:
        """Release all resources. Safe to call in any state."""
        if self._state in (AdapterState.STOPPED, AdapterState.STOPPING):
            return

        self.state = AdapterState.STOPPING
        try:
            await self._on_stop()
        finally:
            self.state = AdapterState.STOPPED
            logger.info(f"{self.protocol.value} adapter stopped")

    @abstractmethod
    async def _on_start(self) -> None:
        ...

    @abstractmethod
    async def _on_stop(self) -> None:
        ...

    @abstractmethod
    def parse(self, raw_payload: Any, context: Optional[Dict[str, Any]] = None) -> StandardTelemetry:
        """
        Convert a native payload into a StandardTelemetry record.

        Must not raise for malformed input; missing fields are left unset.
        """

    async def send_command(self, device_id: str, command: Dict[str, Any]) -> None:
        """
        Deliver a command to a device.

        Raises:
            CommandDeliveryError: If the device or its connection is unknown.
        """
        raise CommandDeliveryError(
            device_id, f"{self.protocol.value} adapter does not accept commands"
        )

    async def emit(self, telemetry: StandardTelemetry) -> None:
        """Hand a record to the sink. Sink failures never stop ingestion."""
        if self._on_telemetry is None:
            return

        try:
            await self._on_telemetry(telemetry)
            self.records_emitted += 1
        except Exception as e:
            self.sink_errors += 1
            logger.error(f"Error in telemetry callback for {telemetry.device_key}: {e}")
