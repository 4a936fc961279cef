"""Wallet provider abstraction for signing transactions."""

import logging
from abc import ABC, abstractmethod
from pathlib import Path

from eth_account import Account
from eth_account.signers.local import LocalAccount
from pydantic import SecretStr

from drip.config import DripConfig

logger = logging.getLogger(__name__)

# Standard Ethereum derivation path; the last component is the account index.
DERIVATION_PATH = "m/44'/60'/0'/0/{index}"


class WalletError(Exception):
    """The funding account credential could not be loaded."""


class WalletProvider(ABC):
    """Abstract wallet provider for signing transactions."""

    @abstractmethod
    def get_account(self) -> LocalAccount:
        """Get the wallet account for signing.

        Returns
        -------
        LocalAccount
            The account instance for transaction signing.
        """
        ...

    @property
    def address(self) -> str:
        """Get the wallet address.

        Returns
        -------
        str
            The checksummed wallet address.
        """
        return self.get_account().address


class EnvironmentWallet(WalletProvider):
    """Load the funding key from an environment variable, a file or a mnemonic.

    Parameters
    ----------
    private_key : SecretStr, optional
        The private key as a SecretStr (from env var).
    private_key_file : str, optional
        Path to a file containing the private key.
    mnemonic : SecretStr, optional
        BIP-39 mnemonic phrase.
    account_index : int
        Index in the derivation path when using a mnemonic.

    Raises
    ------
    ValueError
        If no credential source is provided.
    FileNotFoundError
        If private_key_file does not exist.
    """

    def __init__(
        self,
        private_key: SecretStr | None = None,
        private_key_file: str | None = None,
        mnemonic: SecretStr | None = None,
        account_index: int = 0,
    ):
        if private_key is not None:
            self._account = Account.from_key(private_key.get_secret_value())
        elif private_key_file is not None:
            # Expand ~ to user home directory
            key_path = Path(private_key_file).expanduser()
            if not key_path.exists():
                raise FileNotFoundError(f"Private key file not found: {private_key_file}")
            key_content = key_path.read_text().strip()
            self._account = Account.from_key(key_content)
        elif mnemonic is not None:
            Account.enable_unaudited_hdwallet_features()
            self._account = Account.from_mnemonic(
                mnemonic.get_secret_value(),
                account_path=DERIVATION_PATH.format(index=account_index),
            )
        else:
            raise ValueError("Either private_key, private_key_file or mnemonic must be provided")

    def get_account(self) -> LocalAccount:
        """Get the wallet account for signing."""
        return self._account


def load_wallet(config: DripConfig) -> EnvironmentWallet:
    """Build the funding wallet from configuration.

    Precedence is private key, then key file, then mnemonic.

    Raises
    ------
    WalletError
        If no credential is configured or it cannot be parsed.
    """
    sources = [
        name
        for name, value in (
            ("DRIP_WALLET_PRIVATE_KEY", config.wallet_private_key),
            ("DRIP_WALLET_PRIVATE_KEY_FILE", config.wallet_private_key_file),
            ("DRIP_WALLET_MNEMONIC", config.wallet_mnemonic),
        )
        if value
    ]
    if not sources:
        raise WalletError(
            "No wallet configured. Set DRIP_WALLET_PRIVATE_KEY, "
            "DRIP_WALLET_PRIVATE_KEY_FILE or DRIP_WALLET_MNEMONIC"
        )
    if len(sources) > 1:
        logger.warning(
            "Multiple wallet sources set; using %s",
            sources[0],
            extra={"sources": sources},
        )

    try:
        if config.wallet_private_key:
            return EnvironmentWallet(private_key=config.wallet_private_key)
        if config.wallet_private_key_file:
            return EnvironmentWallet(private_key_file=config.wallet_private_key_file)
        return EnvironmentWallet(
            mnemonic=config.wallet_mnemonic,
            account_index=config.wallet_account_index,
        )
    except Exception as e:
        raise WalletError(f"Failed to load wallet from {sources[0]}: {e}") from e
