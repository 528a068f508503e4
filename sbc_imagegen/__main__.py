"""Allow running as python -m sbc_imagegen."""

from sbc_imagegen.cli import app

app()
