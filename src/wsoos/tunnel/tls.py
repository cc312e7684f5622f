"""TLS server context for the TLS listener."""

import ssl
import logging


logger = logging.getLogger(__name__)


def create_tls_context(cert_file: str, key_file: str) -> ssl.SSLContext:
    """
    Build a server SSLContext from a single certificate/key pair.

    TLS 1.2 is the minimum accepted version. SNI is left to the ssl module;
    every client gets the same certificate.

    Args:
        cert_file: PEM certificate (chain) path.
        key_file: PEM private key path.

    Raises:
        ssl.SSLError, OSError: If the files cannot be loaded.
    """
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    ctx.minimum_version = ssl.TLSVersion.TLSv1_2
    ctx.options |= ssl.OP_NO_COMPRESSION
    ctx.load_cert_chain(certfile=cert_file, keyfile=key_file)
    logger.debug(f"Loaded TLS certificate from {cert_file}")
    return ctx
