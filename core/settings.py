"""
Payment-related settings using pydantic-settings v2 with nested env keys.

Every key lives under the ``PAYMENT__`` prefix, e.g. ``PAYMENT__TIMEOUTS__TOTAL=5``
or ``PAYMENT__ALIPAY__APP_ID=2021...``.
"""
from __future__ import annotations

from functools import lru_cache
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, Field


class PaymentTimeouts(BaseModel):
    connect: float = 1.0
    read: float = 3.0
    write: float = 3.0
    total: float = 5.0
    # Upper bound for query_status during a status read; a slower gateway yields "unknown"
    query: float = 3.0


class PaymentRetry(BaseModel):
    max: int = 2
    base_backoff: float = 0.2


class WebhookSettings(BaseModel):
    ip_allowlist: list[str] | None = None  # Optional IPs/CIDRs allowed to post webhooks


class AlipaySettings(BaseModel):
    enabled: bool = False
    app_id: Optional[str] = None
    private_key_path: Optional[str] = None
    alipay_public_key_path: Optional[str] = None
    gateway: str = "https://openapi.alipay.com/gateway.do"
    sign_type: str = "RSA2"
    notify_url: Optional[str] = None
    return_url: Optional[str] = None
    subject_prefix: str = "订单支付"


class WechatSettings(BaseModel):
    enabled: bool = False
    appid: Optional[str] = None
    mch_id: Optional[str] = None
    mch_cert_serial_no: Optional[str] = None
    private_key_path: Optional[str] = None
    platform_cert_dir: Optional[str] = None
    api_v3_key: Optional[str] = None
    notify_url: Optional[str] = None
    description_prefix: str = "订单支付"


class BalanceSettings(BaseModel):
    enabled: bool = True


class OrderServiceSettings(BaseModel):
    base_url: str = "http://localhost:8001"
    timeout: float = 5.0
    max_retries: int = 3
    api_key: Optional[str] = None


class PaymentSettings(BaseSettings):
    timeouts: PaymentTimeouts = Field(default_factory=PaymentTimeouts)
    retry: PaymentRetry = Field(default_factory=PaymentRetry)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)

    currency: str = "CNY"
    stale_pending_seconds: int = 300
    reconcile_batch_size: int = 100
    payment_number_prefix: str = "PAY"
    refund_id_prefix: str = "RF"

    alipay: AlipaySettings = Field(default_factory=AlipaySettings)
    wechat: WechatSettings = Field(default_factory=WechatSettings)
    balance: BalanceSettings = Field(default_factory=BalanceSettings)
    order_service: OrderServiceSettings = Field(default_factory=OrderServiceSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="PAYMENT__",
        case_sensitive=False,
        extra="ignore",
        env_nested_delimiter="__",
    )

    def enabled_methods(self) -> list[str]:
        methods = []
        if self.wechat.enabled:
            methods.append("wechat")
        if self.alipay.enabled:
            methods.append("alipay")
        if self.balance.enabled:
            methods.append("balance")
        return methods


@lru_cache
def get_payment_settings() -> PaymentSettings:
    return PaymentSettings()
