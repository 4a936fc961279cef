"""Slack integration for DRIP faucet."""

from .adapter import SlackAdapter, SlackConnectionCheck
from .commands import register_commands
from .formatter import MessageFormatter

__all__ = ["MessageFormatter", "SlackAdapter", "SlackConnectionCheck", "register_commands"]
