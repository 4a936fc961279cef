"""Slack command handlers for DRIP faucet.

Commands:
- /drip <address> - Request test tokens
- /drip status [job-id] - Check faucet status, or a pending request
- /drip help - Show help message
"""

import logging

from slack_bolt.async_app import AsyncApp

from drip.blockchain.networks import NetworkInfo
from drip.faucet.service import FaucetService

from .formatter import MessageFormatter

logger = logging.getLogger(__name__)


def _parse_command(text: str) -> tuple[str, str]:
    """Split command text into a subcommand and its argument.

    A bare address is shorthand for a request.

    Returns
    -------
    tuple[str, str]
        (subcommand, argument)
    """
    parts = text.strip().split(None, 1)
    if not parts:
        return "help", ""

    head = parts[0]
    args = parts[1].strip() if len(parts) > 1 else ""
    if head.lower().startswith("0x"):
        return "request", head
    return head.lower(), args


def register_commands(
    app: AsyncApp,
    faucet: FaucetService,
    network: NetworkInfo | None = None,
) -> None:
    """Register the /drip slash command with the Slack app.

    Parameters
    ----------
    app : AsyncApp
        Slack Bolt async app instance.
    faucet : FaucetService
        Faucet service for handling requests.
    network : NetworkInfo | None
        Network info for explorer links.
    """
    formatter = MessageFormatter(network)

    @app.command("/drip")
    async def handle_drip_command(ack, command, respond):
        """Handle /drip slash command."""
        await ack()

        try:
            user_id = command["user_id"]
            subcommand, args = _parse_command(command.get("text", ""))

            logger.info(
                "Received /drip command",
                extra={
                    "user_id": user_id,
                    "subcommand": subcommand,
                    "command_args": args,
                },
            )

            if subcommand == "request":
                await _handle_request(respond, faucet, formatter, user_id, args)
            elif subcommand == "status":
                await _handle_status(respond, faucet, formatter, user_id, args)
            elif subcommand == "help":
                await _handle_help(respond, faucet, formatter)
            else:
                await respond(
                    formatter.format_error(
                        f"Unknown command: `{subcommand}`. Use `/drip help` for available commands."
                    )
                )
        except Exception:
            logger.exception("Error handling /drip command")
            await respond(formatter.format_error("An unexpected error occurred. Please try again."))


async def _handle_request(
    respond, faucet: FaucetService, formatter: MessageFormatter, user_id: str, address: str
) -> None:
    """Handle /drip <address>."""
    outcome = await faucet.request_disbursement(user_id, address)
    await respond(formatter.format_outcome(outcome))


async def _handle_status(
    respond, faucet: FaucetService, formatter: MessageFormatter, user_id: str, job_id: str
) -> None:
    """Handle /drip status [job-id]."""
    if job_id:
        await respond(formatter.format_job_status(faucet.get_job_status(job_id), job_id))
        return

    report = await faucet.health_status()
    user_status = await faucet.get_user_status(user_id)
    await respond(formatter.format_status(report, user_status, faucet.in_flight))


async def _handle_help(respond, faucet: FaucetService, formatter: MessageFormatter) -> None:
    """Handle /drip help."""
    await respond(formatter.format_help(faucet.amount))
