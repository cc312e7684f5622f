"""Startup banner printed by the CLI."""

import sys

from . import __version__


BANNER = r"""
  __      _____  ___   ___  ___
  \ \ /\ / / __|/ _ \ / _ \/ __|
   \ V  V /\__ \ (_) | (_) \__ \
    \_/\_/ |___/\___/ \___/|___/
"""


def print_banner(stream=None) -> None:
    """Print the banner and version to stream (stdout by default)."""
    stream = stream or sys.stdout
    print(BANNER, file=stream)
    print(f"  SSH over HTTP WebSocket / TLS proxy  v{__version__}", file=stream)
    print(file=stream)
