"""
CourtPay Configuration Module

Loads environment variables for the payment gateway core.

Gateway credentials are read once at process start and never change afterwards.
Missing credentials are reported by vnpay_config()/payos_config(), which the
application lifespan calls before serving traffic.
"""
from dataclasses import dataclass
from typing import Literal

from pydantic_settings import BaseSettings

from .exceptions import ConfigurationError


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Notes:
    - Gateway secrets are environment-based and have no usable defaults
    - Sandbox URLs are the defaults for both gateways
    - Timing values drive the expiration sweeper and payment extensions
    """

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Database
    database_path: str = "./courtpay.db"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # VNPay (gateway A)
    vnpay_tmn_code: str = ""
    vnpay_hash_secret: str = ""
    vnpay_payment_url: str = "https://sandbox.vnpayment.vn/paymentv2/vpcpay.html"
    vnpay_api_url: str = "https://sandbox.vnpayment.vn/merchant_webapi/api/transaction"
    vnpay_return_url: str = "http://localhost:5173/transactions/vnpay/return"

    # PayOS (gateway B)
    payos_client_id: str = ""
    payos_api_key: str = ""
    payos_checksum_key: str = ""
    payos_api_url: str = "https://api-merchant.payos.vn/v2"
    payos_return_url: str = "http://localhost:5173/transactions/payos/return"
    payos_cancel_url: str = "http://localhost:5173/transactions/payos/cancel"

    # Payment lifecycle
    payment_timeout_minutes: int = 15
    max_payment_extensions: int = 2
    sweep_interval_seconds: int = 60
    event_redelivery_seconds: int = 30

    # Run both gateways against the in-process sandbox (no network)
    sandbox_mode: bool = False
    sweeper_enabled: bool = True

    # Outbound gateway calls
    gateway_timeout_seconds: float = 30.0
    query_max_attempts: int = 3

    class Config:
        env_file = ".env"
        case_sensitive = False


@dataclass(frozen=True)
class VNPayConfig:
    tmn_code: str
    hash_secret: str
    payment_url: str
    api_url: str
    return_url: str


@dataclass(frozen=True)
class PayOSConfig:
    client_id: str
    api_key: str
    checksum_key: str
    api_url: str
    return_url: str
    cancel_url: str


def _require(values: dict, gateway: str) -> None:
    missing = [name for name, value in values.items() if not value or not str(value).strip()]
    if missing:
        raise ConfigurationError(
            f"{gateway} is not configured. Missing: {', '.join(missing)}",
            details={"gateway": gateway, "missing": missing},
        )


def vnpay_config(source: Settings) -> VNPayConfig:
    """
    Build the immutable VNPay configuration.

    Raises:
        ConfigurationError: If merchant code, secret or URLs are missing
    """
    _require(
        {
            "VNPAY_TMN_CODE": source.vnpay_tmn_code,
            "VNPAY_HASH_SECRET": source.vnpay_hash_secret,
            "VNPAY_PAYMENT_URL": source.vnpay_payment_url,
            "VNPAY_API_URL": source.vnpay_api_url,
            "VNPAY_RETURN_URL": source.vnpay_return_url,
        },
        "vnpay",
    )
    return VNPayConfig(
        tmn_code=source.vnpay_tmn_code.strip(),
        hash_secret=source.vnpay_hash_secret.strip(),
        payment_url=source.vnpay_payment_url.strip(),
        api_url=source.vnpay_api_url.strip(),
        return_url=source.vnpay_return_url.strip(),
    )


def payos_config(source: Settings) -> PayOSConfig:
    """
    Build the immutable PayOS configuration.

    Raises:
        ConfigurationError: If client id, API key, checksum key or URLs are missing
    """
    _require(
        {
            "PAYOS_CLIENT_ID": source.payos_client_id,
            "PAYOS_API_KEY": source.payos_api_key,
            "PAYOS_CHECKSUM_KEY": source.payos_checksum_key,
            "PAYOS_API_URL": source.payos_api_url,
            "PAYOS_RETURN_URL": source.payos_return_url,
            "PAYOS_CANCEL_URL": source.payos_cancel_url,
        },
        "payos",
    )
    return PayOSConfig(
        client_id=source.payos_client_id.strip(),
        api_key=source.payos_api_key.strip(),
        checksum_key=source.payos_checksum_key.strip(),
        api_url=source.payos_api_url.strip().rstrip("/"),
        return_url=source.payos_return_url.strip(),
        cancel_url=source.payos_cancel_url.strip(),
    )


# Global settings instance
settings = Settings()
