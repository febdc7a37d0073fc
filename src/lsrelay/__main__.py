"""Allow running as ``python -m lsrelay``."""

from lsrelay.cli.app import app

app()
