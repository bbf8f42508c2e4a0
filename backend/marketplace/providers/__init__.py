"""
Payment provider adapters.
"""
from typing import Dict

from ..config import Settings
from .base import PaymentProvider, normalize_provider_status
from .paypal import PayPalProvider
from .unipay import UniPayProvider
from .wallet import WalletProvider

DEFAULT_PROVIDER = "unipay"


def build_providers(settings: Settings) -> Dict[str, PaymentProvider]:
    """Instantiate every adapter from the resolved provider configs, keyed by provider name."""
    providers = [
        UniPayProvider(settings.unipay_config()),
        PayPalProvider(settings.paypal_config()),
        WalletProvider("google", settings.wallet_config()),
        WalletProvider("apple", settings.wallet_config()),
    ]
    return {provider.name: provider for provider in providers}


__all__ = [
    "PaymentProvider",
    "PayPalProvider",
    "UniPayProvider",
    "WalletProvider",
    "DEFAULT_PROVIDER",
    "build_providers",
    "normalize_provider_status",
]
