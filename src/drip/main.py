#!/usr/bin/env python3
"""DRIP - chat-driven test network faucet.

Entry point for the DRIP service.
"""

import asyncio
import logging
import os
import signal
import sys
import tempfile
from pathlib import Path

from eth_account import Account

from drip.blockchain.client import ChainClient, ChainError
from drip.blockchain.networks import NetworkInfo
from drip.cli import create_parser, run_cli
from drip.config import DripConfig
from drip.core.wallet import WalletError, load_wallet
from drip.faucet import ChainReachableCheck, FaucetService, FundingBalanceCheck, StartupFailureCheck
from drip.observability.health import HealthServer
from drip.observability.logging import configure_logging
from drip.slack import SlackAdapter, SlackConnectionCheck


def generate_wallet(output_path: str) -> None:
    """Generate a new funding wallet and save the private key to a file.

    Parameters
    ----------
    output_path : str
        Path to save the private key file.
    """
    account = Account.create()

    # Write atomically via a temp file in the same directory (same filesystem).
    key_path = Path(output_path)
    key_path.parent.mkdir(parents=True, exist_ok=True)

    fd, temp_path = tempfile.mkstemp(dir=key_path.parent, prefix=".drip-key-")
    fd_closed = False
    try:
        os.fchmod(fd, 0o600)  # Set permissions before writing
        os.write(fd, account.key.hex().encode())
        os.close(fd)
        fd_closed = True
        os.rename(temp_path, key_path)
    except Exception:
        if not fd_closed:
            os.close(fd)
        Path(temp_path).unlink(missing_ok=True)
        raise

    print(f"""
Wallet generated successfully!

  Address:     {account.address}
  Private Key: {key_path.absolute()}

Next steps:

  1. Fund this address on your test network. Health checks fail until the
     balance reaches DRIP_HEALTH_MIN_BALANCE (twice the transfer amount by default).

  2. Launch DRIP with this wallet:

     export DRIP_WALLET_PRIVATE_KEY_FILE={key_path.absolute()}
     python -m drip

  3. In a container, mount the key as a secret and point
     DRIP_WALLET_PRIVATE_KEY_FILE at the mounted path.

IMPORTANT: Keep this private key secure. Anyone with access can control the wallet.
""")


def parse_args():
    """Parse command line arguments."""
    return create_parser().parse_args()


async def _discover_network(config: DripConfig, client: ChainClient) -> NetworkInfo:
    """Build network info, asking the node for the chain ID when not configured."""
    logger = logging.getLogger(__name__)
    chain_id = config.chain_id
    if chain_id is None:
        try:
            chain_id = await client.get_chain_id()
            logger.info("Connected to chain ID: %d", chain_id)
        except ChainError as e:
            logger.error("Chain unreachable at startup", extra={"error": str(e)})
    return NetworkInfo(
        rpc_endpoint=config.rpc_endpoint,
        chain_id=chain_id,
        block_explorer_url=config.block_explorer_url,
    )


async def run_service() -> None:
    """Run the DRIP service (long-running mode).

    Wires up and starts all service components:
    - Chain client and funding wallet
    - FaucetService with its admission, dispatch, ledger and submitter pipeline
    - HealthServer for the container health probe, metrics and local requests
    - SlackAdapter for Slack Socket Mode, when tokens are configured

    An unreachable chain or an unusable wallet credential does not stop the
    process; /healthcheck reports it instead.
    """
    config = DripConfig()
    configure_logging(level=config.log_level, log_format=config.log_format.value)

    logger = logging.getLogger(__name__)
    logger.info("DRIP starting")
    logger.info("RPC endpoint: %s", config.rpc_endpoint)
    logger.info(
        "Faucet policy",
        extra={
            "transfer_amount": str(config.transfer_amount),
            "cooldown_seconds": config.cooldown_seconds,
            "max_in_flight": config.max_in_flight,
            "daily_limit": config.daily_limit,
        },
    )

    shutdown_event = asyncio.Event()

    # Use asyncio signal handlers for event-loop-safe signal handling
    loop = asyncio.get_running_loop()

    def on_shutdown_signal(sig_name: str) -> None:
        logger.info("Received signal %s, initiating shutdown", sig_name)
        shutdown_event.set()

    loop.add_signal_handler(signal.SIGTERM, lambda: on_shutdown_signal("SIGTERM"))
    loop.add_signal_handler(signal.SIGINT, lambda: on_shutdown_signal("SIGINT"))

    client = ChainClient(config.rpc_endpoint, rpc_timeout=config.rpc_timeout_seconds)

    try:
        wallet = load_wallet(config)
    except WalletError as e:
        logger.error("Funding wallet unavailable", extra={"error": str(e)})
        health_server = HealthServer(port=config.port)
        health_server.add_check(ChainReachableCheck(client))
        health_server.add_check(StartupFailureCheck("wallet", str(e)))
        await health_server.start()
        logger.info("DRIP running in degraded mode; /healthcheck reports the failure")
        await shutdown_event.wait()
        await health_server.stop()
        return

    logger.info("Wallet loaded: %s", wallet.address)

    network = await _discover_network(config, client)
    faucet = FaucetService.from_config(config, client, wallet)

    health_server = HealthServer(
        port=config.port,
        service=faucet,
        requests_enabled=config.http_requests_enabled,
    )
    health_server.add_check(ChainReachableCheck(client))
    health_server.add_check(FundingBalanceCheck(faucet))
    await health_server.start()
    logger.info("Health server started on port %d", config.port)

    await faucet.start()

    slack_adapter = None
    if config.slack_enabled:
        slack_adapter = SlackAdapter(
            bot_token=config.slack_bot_token,
            app_token=config.slack_app_token,
        )
        slack_adapter.attach(faucet, network)
        health_server.add_check(SlackConnectionCheck(slack_adapter), readiness_only=True)
        try:
            await slack_adapter.start()
        except Exception:
            logger.exception("Slack adapter failed to start")
    else:
        logger.warning("SLACK_BOT_TOKEN or SLACK_APP_TOKEN not set; chat commands disabled")

    logger.info("DRIP service ready")

    await shutdown_event.wait()

    # Graceful shutdown
    logger.info("DRIP shutting down...")
    if slack_adapter:
        await slack_adapter.stop()
    await faucet.stop()
    await health_server.stop()
    logger.info("DRIP shutdown complete")


async def main() -> None:
    """Main entry point for DRIP."""
    args = parse_args()

    if args.generate_wallet:
        generate_wallet(args.generate_wallet)
        return

    # Handle CLI subcommands
    if args.command and args.command != "run":
        exit_code = run_cli(args)
        if exit_code >= 0:
            sys.exit(exit_code)
        # exit_code < 0 means show help
        create_parser().print_help()
        sys.exit(0)

    # No subcommand or "run" - start service
    await run_service()


def run() -> None:
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
