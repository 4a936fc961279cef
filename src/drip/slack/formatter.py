"""Message formatter for Slack responses."""

from decimal import Decimal

from web3 import Web3

from drip.blockchain.networks import NetworkInfo
from drip.faucet.models import AdmissionVerdict, DisbursementOutcome, HealthReport, OutcomeStatus


def _section(text: str) -> dict:
    return {"type": "section", "text": {"type": "mrkdwn", "text": text}}


def _context(text: str) -> dict:
    return {"type": "context", "elements": [{"type": "mrkdwn", "text": text}]}


class MessageFormatter:
    """Formats faucet responses for Slack using Block Kit.

    Parameters
    ----------
    network : NetworkInfo | None
        Network info for generating explorer links.
    """

    def __init__(self, network: NetworkInfo | None = None):
        self._network = network

    def _tx_text(self, tx_hash: str) -> str:
        if self._network:
            tx_url = self._network.get_tx_url(tx_hash)
            if tx_url:
                return f"<{tx_url}|{tx_hash[:16]}...>"
        return f"`{tx_hash}`"

    def format_outcome(self, outcome: DisbursementOutcome) -> dict:
        """Format the result of a disbursement request.

        Parameters
        ----------
        outcome : DisbursementOutcome
            Outcome returned by the faucet service.

        Returns
        -------
        dict
            Slack Block Kit message.
        """
        if outcome.status == OutcomeStatus.CONFIRMED:
            return self.format_success(outcome)
        if outcome.status == OutcomeStatus.PENDING:
            return self.format_pending(outcome)
        if outcome.status == OutcomeStatus.REJECTED:
            return self.format_rejection(outcome)
        return self.format_failure(outcome)

    def format_success(self, outcome: DisbursementOutcome) -> dict:
        """Format a confirmed disbursement."""
        blocks = [_section(f":white_check_mark: *{outcome.message}*")]
        if outcome.tx_hash:
            blocks.append(
                {
                    "type": "section",
                    "fields": [
                        {
                            "type": "mrkdwn",
                            "text": f"*Transaction:*\n{self._tx_text(outcome.tx_hash)}",
                        },
                        {"type": "mrkdwn", "text": f"*Job:*\n`{outcome.job_id}`"},
                    ],
                }
            )
        return {"blocks": blocks}

    def format_pending(self, outcome: DisbursementOutcome) -> dict:
        """Format a request that is still being processed."""
        return {
            "blocks": [
                _section(f":hourglass_flowing_sand: *{outcome.message}*"),
                _context(f"Check later with `/drip status {outcome.job_id}`"),
            ]
        }

    def format_rejection(self, outcome: DisbursementOutcome) -> dict:
        """Format a request the faucet refused to queue.

        Rate limiting and backpressure look the same to the requester; the
        wording differs so they know whether waiting on their side helps.
        """
        verdict = outcome.decision.verdict if outcome.decision else None
        if verdict == AdmissionVerdict.REJECTED_INVALID_ADDRESS:
            emoji = ":no_entry:"
        elif verdict == AdmissionVerdict.REJECTED_BACKPRESSURE:
            emoji = ":traffic_light:"
        else:
            emoji = ":stopwatch:"

        blocks = [_section(f"{emoji} *{outcome.message}*")]
        if outcome.retry_after is not None:
            blocks.append(_context(f"Try again in {outcome.retry_after} seconds"))
        return {"blocks": blocks}

    def format_failure(self, outcome: DisbursementOutcome) -> dict:
        """Format a failed or abandoned disbursement."""
        blocks = [_section(f":x: *{outcome.message}*")]
        if outcome.tx_hash:
            blocks.append(_context(f"Last transaction: {self._tx_text(outcome.tx_hash)}"))
        return {"blocks": blocks}

    def format_job_status(self, outcome: DisbursementOutcome | None, job_id: str) -> dict:
        """Format a follow-up job status query."""
        if outcome is None:
            return self.format_error(f"No job found with id `{job_id}`")
        if outcome.status == OutcomeStatus.PENDING:
            return {"blocks": [_section(f":hourglass_flowing_sand: *{outcome.message}*")]}
        return self.format_outcome(outcome)

    def format_status(self, report: HealthReport, user_status: dict, in_flight: int) -> dict:
        """Format faucet status response.

        Parameters
        ----------
        report : HealthReport
            Chain-backed health of the faucet.
        user_status : dict
            Requester's rate limit status from the faucet service.
        in_flight : int
            Jobs admitted but not finished.

        Returns
        -------
        dict
            Slack Block Kit message.
        """
        if report.healthy:
            health = ":white_check_mark: Faucet operational"
        elif not report.chain_reachable:
            health = ":warning: Chain unreachable"
        else:
            health = ":warning: Funding balance low"

        balance = "unknown"
        if report.balance is not None:
            balance = str(Web3.from_wei(report.balance, "ether"))

        cooldown = int(user_status.get("cooldown_seconds") or 0)
        allowance = "ready" if cooldown == 0 else f"in {cooldown}s"
        remaining = user_status.get("remaining_requests")
        if remaining is not None:
            allowance = f"{allowance}, {remaining} left today"

        blocks = [
            {
                "type": "header",
                "text": {"type": "plain_text", "text": "DRIP Faucet Status"},
            },
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*Health:*\n{health}"},
                    {"type": "mrkdwn", "text": f"*Your Next Request:*\n{allowance}"},
                ],
            },
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*Funding Balance:*\n{balance}"},
                    {"type": "mrkdwn", "text": f"*Queue:*\n{in_flight} in flight"},
                ],
            },
        ]

        return {"blocks": blocks}

    def format_help(self, amount: Decimal) -> dict:
        """Format help message.

        Parameters
        ----------
        amount : Decimal
            Amount sent per request.

        Returns
        -------
        dict
            Slack Block Kit message.
        """
        blocks = [
            {
                "type": "header",
                "text": {"type": "plain_text", "text": "DRIP Faucet Commands"},
            },
            _section(
                "*Available Commands:*\n\n"
                "`/drip <address>`\n"
                f"Request {amount} test tokens\n\n"
                "`/drip status`\n"
                "Check faucet health and when you can request again\n\n"
                "`/drip status <job-id>`\n"
                "Check on a request that is still processing\n\n"
                "`/drip help`\n"
                "Show this help message"
            ),
            _context("Rate limits apply. Use `/drip status` to check your allowance."),
        ]

        return {"blocks": blocks}

    def format_error(self, message: str) -> dict:
        """Format a generic error message.

        Parameters
        ----------
        message : str
            Error message.

        Returns
        -------
        dict
            Slack Block Kit message.
        """
        return {"blocks": [_section(f":x: {message}")]}
