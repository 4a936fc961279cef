"""Tests for Slack command handlers."""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import ONE_ETHER, TEST_RECIPIENT

from drip.faucet.models import DisbursementOutcome, HealthReport, OutcomeStatus
from drip.slack.commands import _parse_command, register_commands


class TestParseCommand:
    """Tests for _parse_command helper."""

    def test_bare_address_is_a_request(self):
        assert _parse_command(TEST_RECIPIENT) == ("request", TEST_RECIPIENT)

    def test_uppercase_prefix_is_a_request(self):
        """The address is passed through unchanged for validation later."""
        assert _parse_command("0XABC") == ("request", "0XABC")

    def test_extra_words_after_address_are_ignored(self):
        assert _parse_command(f"{TEST_RECIPIENT} please") == ("request", TEST_RECIPIENT)

    def test_status(self):
        assert _parse_command("status") == ("status", "")

    def test_status_with_job_id(self):
        assert _parse_command("  Status   job-123 ") == ("status", "job-123")

    def test_empty_text_is_help(self):
        assert _parse_command("") == ("help", "")
        assert _parse_command("   ") == ("help", "")

    def test_unknown_subcommand_passes_through(self):
        assert _parse_command("Refill now") == ("refill", "now")


class TestRegisterCommands:
    """Tests for register_commands."""

    @pytest.fixture
    def mock_faucet(self):
        """Create mock faucet service."""
        faucet = MagicMock()
        faucet.amount = Decimal("0.5")
        faucet.in_flight = 3
        faucet.request_disbursement = AsyncMock(
            return_value=DisbursementOutcome(
                status=OutcomeStatus.CONFIRMED,
                message=f"Sent 0.5 to {TEST_RECIPIENT}",
                job_id="job-1",
                tx_hash="0x" + "ab" * 32,
            )
        )
        faucet.get_job_status = MagicMock(
            return_value=DisbursementOutcome(
                status=OutcomeStatus.PENDING, message="Job is submitting", job_id="job-1"
            )
        )
        faucet.health_status = AsyncMock(
            return_value=HealthReport(
                chain_reachable=True, balance_above_threshold=True, balance=10 * ONE_ETHER
            )
        )
        faucet.get_user_status = AsyncMock(return_value={"cooldown_seconds": 0})
        return faucet

    @pytest.fixture
    def handler(self, mock_faucet):
        """Register commands on a mock app and return the /drip handler."""
        app = MagicMock()
        captured = {}

        def capture_handler(cmd):
            def decorator(f):
                captured[cmd] = f
                return f

            return decorator

        app.command = capture_handler
        register_commands(app, mock_faucet)
        return captured["/drip"]

    @pytest.mark.asyncio
    async def test_request_command(self, handler, mock_faucet):
        """An address calls the faucet service and replies with the outcome."""
        ack = AsyncMock()
        respond = AsyncMock()
        command = {"user_id": "U123", "text": TEST_RECIPIENT}

        await handler(ack, command, respond)

        ack.assert_called_once()
        mock_faucet.request_disbursement.assert_awaited_once_with("U123", TEST_RECIPIENT)
        response = respond.call_args[0][0]
        assert "Sent 0.5" in str(response)

    @pytest.mark.asyncio
    async def test_status_command(self, handler, mock_faucet):
        """Status command returns faucet health and the requester's allowance."""
        ack = AsyncMock()
        respond = AsyncMock()
        command = {"user_id": "U123", "text": "status"}

        await handler(ack, command, respond)

        ack.assert_called_once()
        mock_faucet.health_status.assert_awaited_once()
        mock_faucet.get_user_status.assert_awaited_once_with("U123")
        assert "3 in flight" in str(respond.call_args[0][0])

    @pytest.mark.asyncio
    async def test_job_status_command(self, handler, mock_faucet):
        ack = AsyncMock()
        respond = AsyncMock()
        command = {"user_id": "U123", "text": "status job-1"}

        await handler(ack, command, respond)

        mock_faucet.get_job_status.assert_called_once_with("job-1")
        mock_faucet.health_status.assert_not_called()
        assert "Job is submitting" in str(respond.call_args[0][0])

    @pytest.mark.asyncio
    async def test_help_command(self, handler, mock_faucet):
        """Help command shows the configured amount."""
        ack = AsyncMock()
        respond = AsyncMock()
        command = {"user_id": "U123", "text": "help"}

        await handler(ack, command, respond)

        ack.assert_called_once()
        assert "Request 0.5 test tokens" in str(respond.call_args[0][0])

    @pytest.mark.asyncio
    async def test_empty_command_shows_help(self, handler):
        ack = AsyncMock()
        respond = AsyncMock()

        await handler(ack, {"user_id": "U123", "text": ""}, respond)

        respond.assert_called_once()
        assert "DRIP Faucet Commands" in str(respond.call_args[0][0])

    @pytest.mark.asyncio
    async def test_unknown_command(self, handler, mock_faucet):
        """Unknown subcommand returns error."""
        ack = AsyncMock()
        respond = AsyncMock()
        command = {"user_id": "U123", "text": "unknown"}

        await handler(ack, command, respond)

        ack.assert_called_once()
        respond.assert_called_once()
        assert "Unknown command" in str(respond.call_args[0][0])
        mock_faucet.request_disbursement.assert_not_called()

    @pytest.mark.asyncio
    async def test_unexpected_error_is_reported(self, handler, mock_faucet):
        """Errors inside the handler become a generic reply."""
        mock_faucet.request_disbursement.side_effect = RuntimeError("boom")
        ack = AsyncMock()
        respond = AsyncMock()

        await handler(ack, {"user_id": "U123", "text": TEST_RECIPIENT}, respond)

        ack.assert_called_once()
        response = str(respond.call_args[0][0])
        assert "unexpected error" in response
        assert "boom" not in response
