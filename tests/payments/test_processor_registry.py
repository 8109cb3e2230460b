import pytest

from application.processor_registry import ProcessorRegistry
from core.settings import PaymentSettings
from domain.common.money import Money
from domain.common.exceptions import InvalidProcessorException, UnknownGatewayException
from infrastructure.external.payments import build_processor_registry


def test_lookup(registry, gateway):
    assert registry.get("gateway_a") is gateway
    assert registry.for_gateway("gateway_a") is gateway
    assert "gateway_a" in registry
    assert len(registry) == 2


def test_unknown_keys(registry):
    with pytest.raises(InvalidProcessorException):
        registry.get("nope")
    with pytest.raises(UnknownGatewayException):
        registry.for_gateway("nope")


def test_duplicate_registration_rejected(gateway):
    registry = ProcessorRegistry()
    registry.register(gateway)
    with pytest.raises(ValueError):
        registry.register(gateway)


def test_processor_without_credentials_is_skipped():
    settings = PaymentSettings(
        enabled_processors=["stripe", "hosted"],
        hosted={"base_url": "https://checkout.test", "api_key": "k", "webhook_secret": "whsec"},
    )
    registry = build_processor_registry(settings)
    # stripe has no secret key configured
    assert registry.keys() == ["hosted"]
    assert registry.get("hosted").supports("USD", Money(1, "USD"))
