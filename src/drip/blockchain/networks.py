"""Network description used for explorer links in chat replies.

Values come from the environment or are discovered from the RPC endpoint;
no networks are hardcoded.
"""

from dataclasses import dataclass


@dataclass
class NetworkInfo:
    """Network information derived from runtime config.

    Attributes
    ----------
    rpc_endpoint : str
        The RPC endpoint URL.
    chain_id : int | None
        The chain ID, or None when the chain was unreachable at startup.
    block_explorer_url : str | None
        Optional block explorer URL for transaction links.
    """

    rpc_endpoint: str
    chain_id: int | None = None
    block_explorer_url: str | None = None

    def _explorer_link(self, kind: str, value: str) -> str | None:
        if not self.block_explorer_url:
            return None
        return f"{self.block_explorer_url.rstrip('/')}/{kind}/{value}"

    def get_tx_url(self, tx_hash: str) -> str | None:
        """Get the block explorer URL for a transaction, if an explorer is configured."""
        return self._explorer_link("tx", tx_hash)

    def get_address_url(self, address: str) -> str | None:
        """Get the block explorer URL for an address, if an explorer is configured."""
        return self._explorer_link("address", address)
