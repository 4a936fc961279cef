"""Slack adapter for DRIP faucet.

Features:
- Socket Mode connection (no public webhook needed)
- /drip command registration against a faucet service
- Connection state exposed as a health check
"""

import logging
from abc import ABC, abstractmethod

from pydantic import SecretStr
from slack_bolt.adapter.socket_mode.async_handler import AsyncSocketModeHandler
from slack_bolt.async_app import AsyncApp

from drip.blockchain.networks import NetworkInfo
from drip.faucet.service import FaucetService
from drip.observability.health import CheckResult, HealthCheck, HealthStatus

from .commands import register_commands

logger = logging.getLogger(__name__)


class PlatformAdapter(ABC):
    """Abstract base class for chat platform adapters.

    The faucet service only talks to adapters through this interface.
    """

    @abstractmethod
    async def start(self) -> None:
        """Start the adapter and connect to the platform."""
        ...

    @abstractmethod
    async def stop(self) -> None:
        """Stop the adapter and disconnect from the platform."""
        ...

    @property
    @abstractmethod
    def is_running(self) -> bool:
        """Whether the adapter is connected."""
        ...


class SlackAdapter(PlatformAdapter):
    """Slack adapter using Bolt for Python with Socket Mode.

    Parameters
    ----------
    bot_token : SecretStr
        Slack bot token (xoxb-...).
    app_token : SecretStr
        Slack app-level token (xapp-...) for Socket Mode.
    app : AsyncApp | None
        Pre-built Bolt app, mainly for tests.
    """

    def __init__(
        self,
        bot_token: SecretStr,
        app_token: SecretStr,
        app: AsyncApp | None = None,
    ):
        self._app_token = app_token
        self._app = app or AsyncApp(token=bot_token.get_secret_value())
        self._handler: AsyncSocketModeHandler | None = None
        self._running = False

    @property
    def app(self) -> AsyncApp:
        """Get the Slack Bolt app instance."""
        return self._app

    @property
    def is_running(self) -> bool:
        return self._running

    def attach(self, faucet: FaucetService, network: NetworkInfo | None = None) -> None:
        """Route /drip commands to the faucet service."""
        register_commands(self._app, faucet, network)

    async def start(self) -> None:
        """Connect via Socket Mode.

        Raises
        ------
        Exception
            Whatever the Socket Mode client raised while connecting.
        """
        if self._running:
            logger.warning("Slack adapter already running")
            return

        self._handler = AsyncSocketModeHandler(self._app, self._app_token.get_secret_value())

        logger.info("Starting Slack adapter via Socket Mode")
        try:
            await self._handler.connect_async()
        except Exception as e:
            logger.error("Failed to connect Slack adapter", extra={"error": str(e)})
            self._handler = None
            raise
        self._running = True
        logger.info("Slack adapter connected")

    async def stop(self) -> None:
        """Disconnect from Slack."""
        if not self._running:
            return

        if self._handler:
            logger.info("Stopping Slack adapter")
            await self._handler.close_async()
            self._handler = None

        self._running = False
        logger.info("Slack adapter stopped")


class SlackConnectionCheck(HealthCheck):
    """Passes while the Slack adapter is connected."""

    def __init__(self, adapter: PlatformAdapter):
        self._adapter = adapter

    @property
    def name(self) -> str:
        return "slack"

    async def check(self) -> CheckResult:
        if self._adapter.is_running:
            return CheckResult(name=self.name, status=HealthStatus.OK)
        return CheckResult(name=self.name, status=HealthStatus.ERROR, message="Not connected")
