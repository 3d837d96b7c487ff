# runtime configuration, read from SHOP_* environment variables or a .env file
from decimal import Decimal
from functools import lru_cache
from typing import Dict, Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="SHOP_", env_file=".env", extra="ignore"
    )

    # storage
    db_path: str = "data/shop.sqlite"
    load_seed_data: bool = True

    # store
    store_name: str = "ALDENAIR"
    currency: str = "EUR"
    order_number_prefix: str = "ALN"
    shipping_options: Dict[str, Decimal] = {
        "standard": Decimal("4.99"),
        "express": Decimal("9.99"),
        "pickup": Decimal("0.00"),
    }
    default_shipping_option: str = "standard"
    cashback_percent: Decimal = Decimal("5.0")
    refund_claim_ttl_seconds: int = 300

    # payment providers
    provider_timeout: float = 15.0
    stripe_secret_key: Optional[str] = None
    stripe_api_base: str = "https://api.stripe.com"
    checkout_success_url: str = "http://localhost:5000/checkout/success?order={order_id}"
    checkout_cancel_url: str = "http://localhost:5000/checkout/cancel?order={order_id}"
    paypal_client_id: Optional[str] = None
    paypal_client_secret: Optional[str] = None
    paypal_mode: Literal["sandbox", "live"] = "sandbox"

    # email
    resend_api_key: Optional[str] = None
    resend_api_base: str = "https://api.resend.com"
    mail_from: str = "ALDENAIR <orders@aldenair.de>"
    support_email: str = "info@aldenair.de"

    # bank transfer
    bank_recipient: str = "ALDENAIR"
    bank_iban: Optional[str] = None
    bank_bic: Optional[str] = None

    log_level: str = "INFO"

    @property
    def paypal_api_base(self) -> str:
        if self.paypal_mode == "live":
            return "https://api-m.paypal.com"
        return "https://api-m.sandbox.paypal.com"


@lru_cache
def get_settings() -> Settings:
    return Settings()
