"""
=============================================================================
WSOOS CLI ENTRY POINT
=============================================================================

    # Run with configuration from /etc/wsoos/config.yaml (or defaults)
    python -m wsoos

    # Explicit config file
    python -m wsoos -c ./config.yaml

    # Flags override the config file and environment
    python -m wsoos --addr :8080 --dst-addr 127.0.0.1:22

    # TLS listener in stunnel mode
    python -m wsoos --tls --tls-mode stunnel \\
        --private-key /etc/wsoos/tls/cert.pem --public-key /etc/wsoos/tls/key.pem

    # Prometheus metrics on :9090/metrics
    python -m wsoos --metrics

Only flags that are actually passed override the loaded configuration.

=============================================================================
"""

import argparse
import sys
from typing import List, Optional

from . import __version__
from .banner import print_banner
from .config import ConfigError, TLSMode, load_config
from .server import ProxyServer
from .tunnel import ListenError


# CLI flag dest -> ProxyConfig field
FLAG_FIELDS = {
    "addr": "address",
    "tls_addr": "tls_address",
    "dst_addr": "dst_address",
    "custom_handshake": "handshake_code",
    "tls": "tls_enabled",
    "private_key": "tls_private_key",
    "public_key": "tls_public_key",
    "tls_mode": "tls_mode",
    "metrics": "metrics_enabled",
    "metrics_port": "metrics_port",
    "log_level": "log_level",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="wsoos",
        description="SSH over HTTP WebSocket proxy with TLS (SNI) support",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        argument_default=argparse.SUPPRESS,
        epilog="""
Examples:
  wsoos                                   # Defaults / config file
  wsoos -c ./config.yaml                  # Explicit config file
  wsoos --addr :8080 --dst-addr 127.0.0.1:22
  wsoos --custom-handshake 200            # Reply "HTTP/1.1 200 Ok"
  wsoos --tls --tls-mode stunnel          # TLS listener, stunnel clients
        """,
    )

    # ─────────────────────────────────────────────────────────────────────
    # GLOBAL ARGUMENTS
    # ─────────────────────────────────────────────────────────────────────

    parser.add_argument("--config", "-c", default=None,
                        help="Configuration file path (default: search /etc/wsoos, ~/.wsoos, .)")
    parser.add_argument("--log-level", "-l", choices=["debug", "info", "warn", "error"],
                        help="Log level (default: info)")
    parser.add_argument("--version", "-v", action="version",
                        version=f"wsoos version {__version__}")

    # ─────────────────────────────────────────────────────────────────────
    # PROXY ARGUMENTS
    # ─────────────────────────────────────────────────────────────────────

    parser.add_argument("--addr", "-a",
                        help="Set port for listening clients (default: :2086)")
    parser.add_argument("--tls-addr",
                        help="Set port for listening clients if using TLS mode (default: :443)")
    parser.add_argument("--dst-addr",
                        help="Set internal IP for SSH server redirection (default: 127.0.0.1:22)")
    parser.add_argument("--custom-handshake",
                        help="Set custom HTTP code for response")
    parser.add_argument("--tls", action="store_true",
                        help="Enable TLS")
    parser.add_argument("--private-key",
                        help="Path to private certificate if using TLS")
    parser.add_argument("--public-key",
                        help="Path to public certificate if using TLS")
    parser.add_argument("--tls-mode", choices=[m.value for m in TLSMode],
                        help="TLS mode: 'handshake' or 'stunnel'")

    # ─────────────────────────────────────────────────────────────────────
    # METRICS ARGUMENTS
    # ─────────────────────────────────────────────────────────────────────

    parser.add_argument("--metrics", action="store_true",
                        help="Enable Prometheus metrics")
    parser.add_argument("--metrics-port",
                        help="Metrics server address (default: :9090)")

    return parser


def flag_overrides(args: argparse.Namespace) -> dict:
    """Translate explicitly passed flags into ProxyConfig field values."""
    passed = vars(args)
    return {field: passed[flag] for flag, field in FLAG_FIELDS.items() if flag in passed}


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    print_banner()

    try:
        config = load_config(args.config)
        config.apply_overrides(**flag_overrides(args))
        config.validate()
    except ConfigError as e:
        print(f"Error: invalid configuration: {e}", file=sys.stderr)
        return 1

    try:
        ProxyServer(config).run()
    except ListenError as e:
        print(f"Error: failed to start server: {e}", file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
