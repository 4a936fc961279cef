"""Health checks backed by the chain, registered with the HealthServer."""

import logging

from web3 import Web3

from drip.blockchain.client import ChainClient
from drip.observability.health import CheckResult, HealthCheck, HealthStatus

from .service import FaucetService

logger = logging.getLogger(__name__)


class ChainReachableCheck(HealthCheck):
    """Passes when the RPC endpoint answers."""

    def __init__(self, client: ChainClient):
        self._client = client

    @property
    def name(self) -> str:
        return "chain"

    async def check(self) -> CheckResult:
        if await self._client.is_connected():
            return CheckResult(name=self.name, status=HealthStatus.OK)
        return CheckResult(
            name=self.name,
            status=HealthStatus.ERROR,
            message=f"RPC endpoint unreachable: {self._client.rpc_endpoint}",
        )


class FundingBalanceCheck(HealthCheck):
    """Passes when the funding balance is at or above the configured floor.

    Parameters
    ----------
    service : FaucetService
        Facade whose ``health_status`` queries the chain on every call.
    """

    def __init__(self, service: FaucetService):
        self._service = service

    @property
    def name(self) -> str:
        return "funding_balance"

    async def check(self) -> CheckResult:
        report = await self._service.health_status()
        if report.balance_above_threshold:
            return CheckResult(name=self.name, status=HealthStatus.OK)
        if report.balance is None:
            message = "Funding balance unavailable"
        else:
            message = f"Funding balance {Web3.from_wei(report.balance, 'ether')} below floor"
        return CheckResult(name=self.name, status=HealthStatus.ERROR, message=message)


class StartupFailureCheck(HealthCheck):
    """Always fails with a fixed message.

    Registered when the service cannot be built (for example an unreadable
    wallet credential) so the process stays up and reports why.
    """

    def __init__(self, name: str, message: str):
        self._name = name
        self._message = message

    @property
    def name(self) -> str:
        return self._name

    async def check(self) -> CheckResult:
        return CheckResult(name=self._name, status=HealthStatus.ERROR, message=self._message)
