"""Core DRIP components."""

from .wallet import EnvironmentWallet, WalletError, WalletProvider, load_wallet

__all__ = [
    "EnvironmentWallet",
    "WalletError",
    "WalletProvider",
    "load_wallet",
]
