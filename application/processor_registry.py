"""
Processor registry: explicit mapping from a stable processor key to the
gateway implementation registered for it at process start.
"""
from __future__ import annotations

from typing import Iterator

from application.ports.payment_processor import PaymentProcessor
from core.logging_config import get_logger
from domain.common.exceptions import InvalidProcessorException, UnknownGatewayException


logger = get_logger(__name__)


class ProcessorRegistry:
    def __init__(self) -> None:
        self._processors: dict[str, PaymentProcessor] = {}

    def register(self, processor: PaymentProcessor) -> None:
        key = processor.key
        if key in self._processors:
            raise ValueError(f"processor '{key}' already registered")
        self._processors[key] = processor
        logger.info("processor_registered", processor=key, flow=processor.flow.value)

    def get(self, key: str) -> PaymentProcessor:
        """Resolve a processor for payment operations; unknown keys raise InvalidProcessor."""
        try:
            return self._processors[key]
        except KeyError:
            raise InvalidProcessorException(key) from None

    def for_gateway(self, gateway: str) -> PaymentProcessor:
        """Resolve a processor for an inbound webhook; unknown keys raise UnknownGateway."""
        try:
            return self._processors[gateway]
        except KeyError:
            raise UnknownGatewayException(gateway) from None

    def keys(self) -> list[str]:
        return list(self._processors)

    def __contains__(self, key: object) -> bool:
        return key in self._processors

    def __iter__(self) -> Iterator[PaymentProcessor]:
        return iter(self._processors.values())

    def __len__(self) -> int:
        return len(self._processors)

    async def aclose(self) -> None:
        for processor in self._processors.values():
            await processor.aclose()
