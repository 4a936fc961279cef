"""Allow running DRIP with ``python -m drip``."""

from drip.main import run

run()
