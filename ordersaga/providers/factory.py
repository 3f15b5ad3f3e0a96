"""
Gateway factory - build payment gateways from configuration.
"""

from ordersaga.core.config import OrderSagaConfig
from ordersaga.core.exceptions import ConfigurationError
from ordersaga.core.logger import get_logger
from ordersaga.providers.base import PaymentGateway
from ordersaga.types import PaymentProvider

logger = get_logger(__name__)


def _create_cashfree(config: OrderSagaConfig, **kwargs) -> PaymentGateway:
    from ordersaga.providers.cashfree import CashfreeGateway

    return CashfreeGateway(
        config.cashfree,
        notify_url=config.webhook_url,
        timeout=config.provider_timeout_seconds,
        webhook_tolerance_seconds=config.webhook_tolerance_seconds,
        **kwargs,
    )


def _create_razorpay(config: OrderSagaConfig, **kwargs) -> PaymentGateway:
    from ordersaga.providers.razorpay import RazorpayGateway

    return RazorpayGateway(config.razorpay, timeout=config.provider_timeout_seconds, **kwargs)


def _create_memory(config: OrderSagaConfig, **kwargs) -> PaymentGateway:
    from ordersaga.providers.memory import InMemoryPaymentGateway

    return InMemoryPaymentGateway(**kwargs)


_GATEWAY_REGISTRY = {
    PaymentProvider.CASHFREE: _create_cashfree,
    PaymentProvider.RAZORPAY: _create_razorpay,
    PaymentProvider.MEMORY: _create_memory,
}


def create_gateway(provider: PaymentProvider | str, config: OrderSagaConfig, **kwargs) -> PaymentGateway:
    """
    Create one gateway.

    Raises:
        ConfigurationError: Unknown provider or missing credentials
    """
    try:
        provider = PaymentProvider(provider)
    except ValueError:
        msg = f"Unknown payment provider: {provider}"
        raise ConfigurationError(msg) from None
    return _GATEWAY_REGISTRY[provider](config, **kwargs)


def create_configured_gateways(config: OrderSagaConfig) -> dict[PaymentProvider, PaymentGateway]:
    """
    Every gateway that has credentials, plus the default provider.

    The default provider must be buildable; others are skipped silently when
    their credentials are absent.
    """
    gateways: dict[PaymentProvider, PaymentGateway] = {}
    if config.cashfree.configured:
        gateways[PaymentProvider.CASHFREE] = create_gateway(PaymentProvider.CASHFREE, config)
    if config.razorpay.configured:
        gateways[PaymentProvider.RAZORPAY] = create_gateway(PaymentProvider.RAZORPAY, config)
    if config.provider not in gateways:
        gateways[config.provider] = create_gateway(config.provider, config)

    logger.info(f"Payment gateways enabled: {', '.join(p.value for p in gateways)}")
    return gateways
