"""Allow ``python -m stackwright``."""

from stackwright.cli.main import app

app()
