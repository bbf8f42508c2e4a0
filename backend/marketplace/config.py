"""
Marketplace Configuration Module

Loads environment variables once at startup and derives the explicit
per-provider configuration objects that are injected into payment adapters.
"""
from dataclasses import dataclass
from typing import Literal, Optional

from pydantic_settings import BaseSettings


@dataclass(frozen=True)
class PayPalConfig:
    """Resolved PayPal credentials for one environment."""
    client_id: Optional[str]
    client_secret: Optional[str]
    base_url: str
    environment: Literal["sandbox", "live"]
    webhook_id: Optional[str]
    brand_name: str
    return_url: str
    cancel_url: str
    timeout_seconds: float

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)


@dataclass(frozen=True)
class UniPayConfig:
    """Resolved UniPay (regional gateway) credentials for one environment."""
    merchant_id: Optional[str]
    api_key: Optional[str]
    base_url: str
    environment: Literal["test", "production"]
    webhook_secret: Optional[str]
    success_url: str
    cancel_url: str
    callback_url: str
    timeout_seconds: float

    @property
    def configured(self) -> bool:
        return bool(self.merchant_id and self.api_key)


@dataclass(frozen=True)
class WalletConfig:
    """Direct wallet (Google Pay / Apple Pay) settings."""
    environment: Literal["test", "production"]
    webhook_secret: Optional[str]


@dataclass(frozen=True)
class EmailConfig:
    """SendGrid delivery settings."""
    api_key: Optional[str]
    from_email: str
    from_name: str
    website_url: str
    sandbox: bool
    timeout_seconds: float


@dataclass(frozen=True)
class CompanyInfo:
    """Seller block printed on every invoice."""
    name: str
    address: str
    city: str
    country: str
    postal_code: str
    tax_id: str
    email: str
    phone: str
    website: str

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "address": self.address,
            "city": self.city,
            "country": self.country,
            "postalCode": self.postal_code,
            "taxId": self.tax_id,
            "email": self.email,
            "phone": self.phone,
            "website": self.website,
        }


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Provider credentials are never read outside this module: adapters receive
    the resolved config objects from the ``*_config()`` helpers below.
    """

    # Runtime
    demo_mode: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    environment: Literal["development", "production"] = "development"

    # Database
    database_path: str = "./marketplace.db"

    # Server
    host: str = "0.0.0.0"
    port: int = 4000
    frontend_url: str = "http://localhost:5173"
    api_url: str = "http://localhost:4000"
    admin_key: Optional[str] = None

    # PayPal
    paypal_client_id: Optional[str] = None
    paypal_client_secret: Optional[str] = None
    paypal_environment: Literal["sandbox", "live"] = "sandbox"
    paypal_webhook_id: Optional[str] = None
    paypal_brand_name: str = "AI Waverider"

    # UniPay
    unipay_environment: Literal["test", "production"] = "test"
    unipay_merchant_id: Optional[str] = None
    unipay_api_key: Optional[str] = None
    unipay_test_merchant_id: Optional[str] = None
    unipay_test_api_key: Optional[str] = None
    unipay_webhook_secret: Optional[str] = None
    unipay_base_url: str = "https://apiv2.unipay.com/v3"

    # Direct wallets
    wallet_webhook_secret: Optional[str] = None

    # Email
    sendgrid_api_key: Optional[str] = None
    sendgrid_from_email: str = "support@aiwaverider.com"
    sendgrid_from_name: str = "AI Waverider"
    sendgrid_sandbox: bool = False
    website_url: str = "https://aiwaverider.com"

    # Invoice company block
    company_name: str = "AI Waverider Ltd"
    company_address: str = "123 Tech Street"
    company_city: str = "Tbilisi"
    company_country: str = "Georgia"
    company_postal_code: str = "0108"
    company_tax_id: str = "GE123456789"
    company_email: str = "support@aiwaverider.com"
    company_phone: str = "+995 558 950 430"
    company_website: str = "https://aiwaverider.com"

    # Pipeline tuning
    provider_timeout_seconds: float = 30.0
    token_ttl_days: int = 30
    outbox_retry_interval_seconds: int = 60
    outbox_max_attempts: int = 5

    class Config:
        env_file = ".env"
        case_sensitive = False

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def paypal_config(self) -> PayPalConfig:
        live = self.is_production and self.paypal_environment == "live"
        return PayPalConfig(
            client_id=self.paypal_client_id,
            client_secret=self.paypal_client_secret,
            base_url="https://api-m.paypal.com" if live else "https://api-m.sandbox.paypal.com",
            environment="live" if live else "sandbox",
            webhook_id=self.paypal_webhook_id,
            brand_name=self.paypal_brand_name,
            return_url=f"{self.api_url}/api/payments/paypal/success",
            cancel_url=f"{self.api_url}/api/payments/paypal/cancel",
            timeout_seconds=self.provider_timeout_seconds,
        )

    def unipay_config(self) -> UniPayConfig:
        production = self.is_production and self.unipay_environment == "production"
        return UniPayConfig(
            merchant_id=self.unipay_merchant_id if production else self.unipay_test_merchant_id,
            api_key=self.unipay_api_key if production else self.unipay_test_api_key,
            base_url=self.unipay_base_url,
            environment="production" if production else "test",
            webhook_secret=self.unipay_webhook_secret,
            success_url=f"{self.api_url}/api/payments/unipay/success",
            cancel_url=f"{self.api_url}/api/payments/unipay/cancel",
            callback_url=f"{self.api_url}/api/payments/unipay/webhook",
            timeout_seconds=self.provider_timeout_seconds,
        )

    def wallet_config(self) -> WalletConfig:
        return WalletConfig(
            environment="production" if self.is_production else "test",
            webhook_secret=self.wallet_webhook_secret,
        )

    def email_config(self) -> EmailConfig:
        return EmailConfig(
            api_key=self.sendgrid_api_key,
            from_email=self.sendgrid_from_email,
            from_name=self.sendgrid_from_name,
            website_url=self.website_url,
            sandbox=self.sendgrid_sandbox,
            timeout_seconds=self.provider_timeout_seconds,
        )

    def company_info(self) -> CompanyInfo:
        return CompanyInfo(
            name=self.company_name,
            address=self.company_address,
            city=self.company_city,
            country=self.company_country,
            postal_code=self.company_postal_code,
            tax_id=self.company_tax_id,
            email=self.company_email,
            phone=self.company_phone,
            website=self.company_website,
        )


# Global settings instance
settings = Settings()
