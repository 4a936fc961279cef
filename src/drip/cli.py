"""CLI subcommands for DRIP testing and operations.

Provides command-line interface for:
- Wallet operations (address, balance, sequence)
- Faucet operations (status, send)
"""

import argparse
import asyncio
import json
import sys
from decimal import Decimal

from web3 import Web3

from drip.blockchain.client import ChainClient
from drip.config import DripConfig
from drip.core.wallet import EnvironmentWallet, load_wallet
from drip.faucet.admission import validate_address
from drip.faucet.service import FaucetService


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser with all subcommands."""
    parser = argparse.ArgumentParser(
        prog="drip",
        description="DRIP - chat-driven test network faucet",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    # Global flags
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output in JSON format",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would happen without executing",
    )
    parser.add_argument(
        "--generate-wallet",
        metavar="FILE",
        help="Generate a new wallet and save private key to FILE, then exit",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Wallet subcommand
    wallet_parser = subparsers.add_parser("wallet", help="Funding wallet operations")
    wallet_sub = wallet_parser.add_subparsers(dest="wallet_command")

    wallet_sub.add_parser("address", help="Show funding wallet address")
    wallet_sub.add_parser("balance", help="Show funding wallet balance")
    wallet_sub.add_parser("sequence", help="Show confirmed and pending sequence numbers")

    # Faucet subcommand
    faucet_parser = subparsers.add_parser("faucet", help="Faucet operations")
    faucet_sub = faucet_parser.add_subparsers(dest="faucet_command")

    faucet_sub.add_parser("status", help="Show faucet health")

    send_parser = faucet_sub.add_parser("send", help="Send the configured amount to an address")
    send_parser.add_argument("address", type=str, help="Recipient address")

    # Run subcommand (start service)
    subparsers.add_parser("run", help="Start the DRIP service")

    return parser


class CLIContext:
    """Shared context for CLI commands."""

    def __init__(self, config: DripConfig, dry_run: bool = False, json_output: bool = False):
        self.config = config
        self.dry_run = dry_run
        self.json_output = json_output
        self._wallet: EnvironmentWallet | None = None
        self._client: ChainClient | None = None

    @property
    def wallet(self) -> EnvironmentWallet:
        """Get wallet (lazy loaded)."""
        if self._wallet is None:
            self._wallet = load_wallet(self.config)
        return self._wallet

    @property
    def client(self) -> ChainClient:
        """Get chain client (lazy loaded)."""
        if self._client is None:
            self._client = ChainClient(
                self.config.rpc_endpoint,
                rpc_timeout=self.config.rpc_timeout_seconds,
            )
        return self._client

    def output(self, data: dict) -> None:
        """Output data in the appropriate format."""
        if self.json_output:
            # Convert Decimal to string for JSON serialization
            def decimal_default(obj):
                if isinstance(obj, Decimal):
                    return str(obj)
                raise TypeError(f"Object of type {type(obj)} is not JSON serializable")

            print(json.dumps(data, default=decimal_default, indent=2))
        else:
            self._print_formatted(data)

    def _print_formatted(self, data: dict, indent: int = 0) -> None:
        """Print data in human-readable format."""
        prefix = "  " * indent
        for key, value in data.items():
            if isinstance(value, dict):
                print(f"{prefix}{key}:")
                self._print_formatted(value, indent + 1)
            else:
                print(f"{prefix}{key}: {value}")


# Wallet commands


def cmd_wallet_address(ctx: CLIContext) -> int:
    """Show wallet address."""
    try:
        ctx.output({"address": ctx.wallet.address})
        return 0
    except Exception as e:
        ctx.output({"error": str(e)})
        return 1


async def _wallet_balance(ctx: CLIContext) -> dict | None:
    if not await ctx.client.is_connected():
        return None
    return {
        "address": ctx.wallet.address,
        "balance": await ctx.client.get_balance_ether(ctx.wallet.address),
        "rpc": ctx.config.rpc_endpoint,
        "chain_id": await ctx.client.get_chain_id(),
    }


def cmd_wallet_balance(ctx: CLIContext) -> int:
    """Show wallet balance."""
    try:
        data = asyncio.run(_wallet_balance(ctx))
        if data is None:
            ctx.output({"error": "Not connected to RPC endpoint"})
            return 1
        ctx.output(data)
        return 0
    except Exception as e:
        ctx.output({"error": str(e)})
        return 1


async def _wallet_sequence(ctx: CLIContext) -> dict:
    address = ctx.wallet.address
    latest = await ctx.client.get_sequence(address, "latest")
    pending = await ctx.client.get_sequence(address, "pending")
    return {"address": address, "confirmed": latest, "pending": pending}


def cmd_wallet_sequence(ctx: CLIContext) -> int:
    """Show the funding account's confirmed and pending sequence numbers."""
    try:
        ctx.output(asyncio.run(_wallet_sequence(ctx)))
        return 0
    except Exception as e:
        ctx.output({"error": str(e)})
        return 1


# Faucet commands


async def _faucet_status(ctx: CLIContext) -> dict:
    service = FaucetService.from_config(ctx.config, ctx.client, ctx.wallet)
    report = await service.health_status()
    balance = None
    if report.balance is not None:
        balance = Decimal(str(Web3.from_wei(report.balance, "ether")))
    return {
        "healthy": report.healthy,
        "chain_reachable": report.chain_reachable,
        "balance_above_threshold": report.balance_above_threshold,
        "balance": balance,
        "min_balance": ctx.config.min_funding_balance,
        "transfer_amount": ctx.config.transfer_amount,
    }


def cmd_faucet_status(ctx: CLIContext) -> int:
    """Show faucet health as the /healthcheck endpoint sees it."""
    try:
        data = asyncio.run(_faucet_status(ctx))
        ctx.output(data)
        return 0 if data["healthy"] else 1
    except Exception as e:
        ctx.output({"error": str(e)})
        return 1


async def _faucet_send(ctx: CLIContext, address: str) -> dict:
    service = FaucetService.from_config(ctx.config, ctx.client, ctx.wallet, client_timeout=None)
    await service.start()
    try:
        outcome = await service.request_disbursement("cli", address)
    finally:
        await service.stop()
    return outcome.to_dict()


def cmd_faucet_send(ctx: CLIContext, address: str) -> int:
    """Send the configured amount to an address through the full pipeline."""
    try:
        if not validate_address(address):
            ctx.output({"error": f"Invalid address: {address}"})
            return 1

        if ctx.dry_run:
            ctx.output(
                {
                    "dry_run": True,
                    "action": "send",
                    "to": address,
                    "amount": ctx.config.transfer_amount,
                    "message": f"Would send {ctx.config.transfer_amount} to {address}",
                }
            )
            return 0

        result = asyncio.run(_faucet_send(ctx, address))
        ctx.output(result)
        return 0 if result["status"] == "confirmed" else 1
    except Exception as e:
        ctx.output({"error": str(e)})
        return 1


def run_cli(args: argparse.Namespace) -> int:
    """Execute CLI command based on parsed arguments.

    Returns
    -------
    int
        Exit code: 0 for success, positive for error, -1 signals caller
        to show help (no CLI command specified).
    """
    # Load config
    try:
        config = DripConfig()
    except Exception as e:
        if args.json:
            print(json.dumps({"error": f"Configuration error: {e}"}))
        else:
            print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    ctx = CLIContext(config, dry_run=args.dry_run, json_output=args.json)

    # Route to appropriate command
    if args.command == "wallet":
        if args.wallet_command == "address":
            return cmd_wallet_address(ctx)
        elif args.wallet_command == "balance":
            return cmd_wallet_balance(ctx)
        elif args.wallet_command == "sequence":
            return cmd_wallet_sequence(ctx)
        else:
            print("Usage: drip wallet [address|balance|sequence]", file=sys.stderr)
            return 1

    elif args.command == "faucet":
        if args.faucet_command == "status":
            return cmd_faucet_status(ctx)
        elif args.faucet_command == "send":
            return cmd_faucet_send(ctx, args.address)
        else:
            print("Usage: drip faucet [status|send]", file=sys.stderr)
            return 1

    else:
        # No subcommand - show help
        return -1
