"""
Adapter lookup table keyed by protocol.
"""
import logging
from typing import Dict, List, Union

from ..domain.entities.telemetry import TelemetryProtocol
from ..domain.exceptions import AdapterNotRegistered
from .base import ProtocolAdapter, TelemetrySink

logger = logging.getLogger(__name__)


class AdapterRegistry:
    """
    Holds one adapter per protocol and manages their lifecycle together.
    """

    def __init__(self):
        self._adapters: Dict[TelemetryProtocol, ProtocolAdapter] = {}

    def register(self, adapter: ProtocolAdapter) -> None:
        """
        Register an adapter under its protocol.

        Raises:
            ValueError: If the protocol already has an adapter.
        """
        if adapter.protocol in self._adapters:
            raise ValueError(f"Adapter already registered for {adapter.protocol.value}")

        self._adapters[adapter.protocol] = adapter
        logger.debug(f"Registered {adapter.protocol.value} adapter")

    def get(self, protocol: Union[TelemetryProtocol, str]) -> ProtocolAdapter:
        """
        Get the adapter for a protocol.

        Raises:
            AdapterNotRegistered: If no adapter handles the protocol.
        """
        try:
            key = TelemetryProtocol(protocol)
        except ValueError:
            raise AdapterNotRegistered(str(protocol)) from None

        adapter = self._adapters.get(key)
        if adapter is None:
            raise AdapterNotRegistered(key.value)
        return adapter

    def protocols(self) -> List[TelemetryProtocol]:
        return list(self._adapters)

    def set_on_telemetry(self, callback: TelemetrySink) -> None:
        """Point every registered adapter at the same sink."""
        for adapter in self._adapters.values():
            adapter.set_on_telemetry(callback)

    async def start_all(self) -> None:
        """
        Start adapters in registration order.

        If one fails, the ones already started are stopped again before the
        error propagates.
        """
        started: List[ProtocolAdapter] = []
        for adapter in self._adapters.values():
            try:
                await adapter.start()
            except Exception:
                for running in reversed(started):
                    await self._stop_quietly(running)
                raise
            started.append(adapter)

    async def stop_all(self) -> None:
        """Stop adapters in reverse order; errors are logged and skipped."""
        for adapter in reversed(list(self._adapters.values())):
            await self._stop_quietly(adapter)

    async def _stop_quietly(self, adapter: ProtocolAdapter) -> None:
        try:
            await adapter.stop()
        except Exception as e:
            logger.error(f"Error stopping {adapter.protocol.value} adapter: {e}")

    def __contains__(self, protocol: object) -> bool:
        try:
            return TelemetryProtocol(protocol) in self._adapters
        except ValueError:
            return False

    def __len__(self) -> int:
        return len(self._adapters)
