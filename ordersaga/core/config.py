"""
OrderSagaConfig - Unified configuration for the checkout saga.

Provides a single, type-safe configuration object covering:
- Storage backend (orders, dedup markers, payment records)
- Payment gateway credentials (Cashfree, Razorpay)
- Carrier credentials (Delhivery)
- Saga policy (expiry window, retry/backoff, timeouts, auto-booking)

Example:
    >>> from ordersaga.core.config import OrderSagaConfig, configure
    >>>
    >>> config = OrderSagaConfig(
    ...     storage_url="postgresql://localhost/shop",
    ...     default_provider="cashfree",
    ...     cashfree=CashfreeSettings(client_id="...", secret_key="..."),
    ... )
    >>> configure(config)

    >>> # Or from the environment (.env is loaded first)
    >>> config = OrderSagaConfig.from_env()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from ordersaga.types import PaymentProvider

logger = logging.getLogger(__name__)

CASHFREE_SANDBOX_URL = "https://sandbox.cashfree.com"
CASHFREE_PRODUCTION_URL = "https://api.cashfree.com"
RAZORPAY_API_URL = "https://api.razorpay.com"
DELHIVERY_STAGING_URL = "https://staging-express.delhivery.com"


@dataclass
class CashfreeSettings:
    """Cashfree PG credentials; webhook_secret falls back to secret_key"""

    client_id: str = ""
    secret_key: str = ""
    webhook_secret: str = ""
    environment: str = "sandbox"
    api_version: str = "2022-09-01"
    base_url: str | None = None

    @property
    def api_url(self) -> str:
        if self.base_url:
            return self.base_url.rstrip("/")
        if self.environment == "production":
            return CASHFREE_PRODUCTION_URL
        return CASHFREE_SANDBOX_URL

    @property
    def signing_secret(self) -> str:
        return self.webhook_secret or self.secret_key

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.secret_key)


@dataclass
class RazorpaySettings:
    """Razorpay credentials"""

    key_id: str = ""
    key_secret: str = ""
    webhook_secret: str = ""
    base_url: str = RAZORPAY_API_URL

    @property
    def configured(self) -> bool:
        return bool(self.key_id and self.key_secret)


@dataclass
class DelhiverySettings:
    """Delhivery credentials and seller details"""

    api_key: str = ""
    base_url: str = DELHIVERY_STAGING_URL
    pickup_location: str = ""
    seller_name: str = ""
    seller_address: str = ""

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.pickup_location)


@dataclass
class OrderSagaConfig:
    """
    Unified configuration for the checkout saga.

    Attributes:
        storage_url: memory://, sqlite:///path.db or postgresql://...
        currency: ISO currency fixed for the deployment
        default_provider: Gateway used when create_intent gets none
        payment_expiry_seconds: Window after which unverified orders expire
        sweep_interval_seconds: How often the expiry sweeper runs
        provider_timeout_seconds: Bound on every external call
        retry_base_delay / retry_max_delay / retry_max_attempts: verification backoff
        dedup_retention_days: How long idempotency markers are kept
        claim_timeout_seconds: Age after which an unfinished claim may be taken over
        webhook_tolerance_seconds: Max age of a signed webhook timestamp (0 = unchecked)
        auto_book_shipment: Book with the carrier right after VERIFIED
        check_serviceability_before_booking: Ask the carrier before booking
        item_weight_kg: Per-unit weight used for carrier bookings
        webhook_url: Callback URL registered with the payment gateway
        return_url: Where the gateway sends the customer after paying
    """

    storage_url: str = "memory://"
    currency: str = "INR"
    default_provider: str = "cashfree"
    payment_expiry_seconds: float = 1800.0
    sweep_interval_seconds: float = 60.0
    provider_timeout_seconds: float = 10.0
    retry_base_delay: float = 0.5
    retry_max_delay: float = 8.0
    retry_max_attempts: int = 4
    dedup_retention_days: int = 7
    claim_timeout_seconds: float = 60.0
    webhook_tolerance_seconds: float = 300.0
    auto_book_shipment: bool = True
    check_serviceability_before_booking: bool = True
    item_weight_kg: float = 0.5
    webhook_url: str = ""
    return_url: str = ""
    carrier: str = "delhivery"

    cashfree: CashfreeSettings = field(default_factory=CashfreeSettings)
    razorpay: RazorpaySettings = field(default_factory=RazorpaySettings)
    delhivery: DelhiverySettings = field(default_factory=DelhiverySettings)

    def __post_init__(self) -> None:
        try:
            PaymentProvider(self.default_provider)
        except ValueError:
            msg = f"Unknown payment provider: {self.default_provider}"
            raise ValueError(msg) from None

        if self.retry_max_attempts < 1:
            msg = "retry_max_attempts must be at least 1"
            raise ValueError(msg)

    @property
    def provider(self) -> PaymentProvider:
        return PaymentProvider(self.default_provider)

    @classmethod
    def from_env(cls, load_dotenv: bool = True) -> OrderSagaConfig:
        """
        Create configuration from environment variables.

        Environment variables:
            ORDERSAGA_STORAGE_URL: Storage connection string
            ORDERSAGA_CURRENCY: ISO currency (default INR)
            ORDERSAGA_DEFAULT_PROVIDER: cashfree, razorpay or memory
            ORDERSAGA_PAYMENT_EXPIRY_SECONDS, ORDERSAGA_SWEEP_INTERVAL
            ORDERSAGA_PROVIDER_TIMEOUT, ORDERSAGA_AUTO_BOOK_SHIPMENT
            ORDERSAGA_WEBHOOK_URL, ORDERSAGA_RETURN_URL
            ORDERSAGA_CARRIER: delhivery or memory
            CASHFREE_CLIENT_ID, CASHFREE_SECRET_KEY, CASHFREE_WEBHOOK_SECRET,
            CASHFREE_ENVIRONMENT
            RAZORPAY_KEY_ID, RAZORPAY_KEY_SECRET, RAZORPAY_WEBHOOK_SECRET
            DELHIVERY_API_KEY, DELHIVERY_BASE_URL, DELHIVERY_PICKUP_LOCATION,
            SELLER_NAME, SELLER_ADDRESS

        Args:
            load_dotenv: If True, loads .env file before reading variables
        """
        from ordersaga.core.env import get_env

        env = get_env()
        if load_dotenv:
            env.load()

        return cls(
            storage_url=env.get("ORDERSAGA_STORAGE_URL", "memory://") or "memory://",
            currency=env.get("ORDERSAGA_CURRENCY", "INR") or "INR",
            default_provider=env.get("ORDERSAGA_DEFAULT_PROVIDER", "cashfree") or "cashfree",
            payment_expiry_seconds=env.get_float("ORDERSAGA_PAYMENT_EXPIRY_SECONDS", 1800.0),
            sweep_interval_seconds=env.get_float("ORDERSAGA_SWEEP_INTERVAL", 60.0),
            provider_timeout_seconds=env.get_float("ORDERSAGA_PROVIDER_TIMEOUT", 10.0),
            retry_max_attempts=env.get_int("ORDERSAGA_RETRY_MAX_ATTEMPTS", 4),
            dedup_retention_days=env.get_int("ORDERSAGA_DEDUP_RETENTION_DAYS", 7),
            webhook_tolerance_seconds=env.get_float("ORDERSAGA_WEBHOOK_TOLERANCE", 300.0),
            auto_book_shipment=env.get_bool("ORDERSAGA_AUTO_BOOK_SHIPMENT", True),
            check_serviceability_before_booking=env.get_bool(
                "ORDERSAGA_CHECK_SERVICEABILITY", True
            ),
            webhook_url=env.get_first("ORDERSAGA_WEBHOOK_URL", default="") or "",
            return_url=env.get_first("ORDERSAGA_RETURN_URL", default="") or "",
            carrier=env.get("ORDERSAGA_CARRIER", "delhivery") or "delhivery",
            cashfree=CashfreeSettings(
                client_id=env.get("CASHFREE_CLIENT_ID", "") or "",
                secret_key=env.get("CASHFREE_SECRET_KEY", "") or "",
                webhook_secret=env.get("CASHFREE_WEBHOOK_SECRET", "") or "",
                environment=env.get_first(
                    "CASHFREE_ENVIRONMENT", "NEXT_PUBLIC_CASHFREE_ENVIRONMENT", default="sandbox"
                )
                or "sandbox",
            ),
            razorpay=RazorpaySettings(
                key_id=env.get("RAZORPAY_KEY_ID", "") or "",
                key_secret=env.get("RAZORPAY_KEY_SECRET", "") or "",
                webhook_secret=env.get("RAZORPAY_WEBHOOK_SECRET", "") or "",
            ),
            delhivery=DelhiverySettings(
                api_key=env.get("DELHIVERY_API_KEY", "") or "",
                base_url=env.get("DELHIVERY_BASE_URL", DELHIVERY_STAGING_URL)
                or DELHIVERY_STAGING_URL,
                pickup_location=env.get("DELHIVERY_PICKUP_LOCATION", "") or "",
                seller_name=env.get("SELLER_NAME", "") or "",
                seller_address=env.get("SELLER_ADDRESS", "") or "",
            ),
        )

    @classmethod
    def from_file(cls, file_path: str | Path, substitute_env: bool = True) -> OrderSagaConfig:
        """
        Load configuration from a YAML file.

        Supports environment variable substitution using ${VAR} syntax.

        Example:
            # In ordersaga.yaml:
            # storage_url: ${ORDERSAGA_STORAGE_URL:-sqlite:///orders.db}
            # cashfree:
            #   client_id: ${CASHFREE_CLIENT_ID:?Cashfree client id required}
        """
        import yaml

        from ordersaga.core.env import get_env

        path = Path(file_path)
        if not path.exists():
            msg = f"Configuration file not found: {file_path}"
            raise FileNotFoundError(msg)

        with path.open() as f:
            data = yaml.safe_load(f)

        if not data:
            return cls()

        if substitute_env:
            env = get_env()
            env.load()
            data = env.substitute_dict(data)

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> OrderSagaConfig:
        """Build config from a plain dict, ignoring unknown keys."""
        nested = {
            "cashfree": CashfreeSettings,
            "razorpay": RazorpaySettings,
            "delhivery": DelhiverySettings,
        }
        known = {f.name for f in fields(cls)}
        kwargs: dict[str, Any] = {}

        for key, value in data.items():
            if key not in known:
                logger.warning(f"Ignoring unknown config key: {key}")
                continue
            if key in nested:
                kwargs[key] = _build_settings(nested[key], value or {})
            else:
                kwargs[key] = value

        return cls(**kwargs)


def _build_settings(settings_cls: type, data: dict[str, Any]) -> Any:
    known = {f.name for f in fields(settings_cls)}
    return settings_cls(**{k: v for k, v in data.items() if k in known})


# Global configuration singleton
_global_config: OrderSagaConfig | None = None


def get_config() -> OrderSagaConfig:
    """Get the global configuration."""
    global _global_config
    if _global_config is None:
        _global_config = OrderSagaConfig()
    return _global_config


def configure(config: OrderSagaConfig) -> None:
    """Set the global configuration."""
    global _global_config
    _global_config = config
    logger.info(
        f"ordersaga configured: storage={config.storage_url.split('://')[0]}, "
        f"provider={config.default_provider}"
    )
