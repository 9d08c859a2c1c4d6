"""TLS contexts for capsules (pyOpenSSL).

Each capsule gets its own SSL.Context holding its certificate and key. A
listener hands out the context of its first capsule and switches the
connection to the right one during the handshake, based on the server name
the client asked for (SNI).
"""

import logging
from typing import Callable, Optional

from OpenSSL import SSL

from .config import ConfigError

logger = logging.getLogger(__name__)


def ssl_context(cert_file: str, key_file: str) -> SSL.Context:
    """Build a server context for one certificate/key pair.

    Raises:
        ConfigError: If either file cannot be loaded or they do not match
    """
    ctx = SSL.Context(SSL.TLS_SERVER_METHOD)
    ctx.set_options(SSL.OP_NO_COMPRESSION)
    ctx.set_min_proto_version(SSL.TLS1_2_VERSION)
    try:
        ctx.use_certificate_chain_file(cert_file)
        ctx.use_privatekey_file(key_file)
        ctx.check_privatekey()
    except SSL.Error as e:
        raise ConfigError(
            f"Cannot load certificate {cert_file} / key {key_file}: {e}"
        ) from e
    return ctx


def install_sni(
    default: SSL.Context,
    lookup: Callable[[str], Optional[SSL.Context]],
) -> SSL.Context:
    """Select a context per connection from the Client Hello server name.

    `lookup` maps a lowercase hostname to its context, or None. Unknown and
    missing names keep `default`, so the handshake still succeeds and the
    hostname is rejected later at the protocol layer.
    """

    def on_servername(conn: SSL.Connection):
        raw = conn.get_servername()
        if not raw:
            return
        name = raw.decode("ascii", "replace").lower()
        ctx = lookup(name)
        if ctx is not None and ctx is not default:
            conn.set_context(ctx)
        elif ctx is None:
            logger.debug("No certificate for SNI %s, using default", name)

    default.set_tlsext_servername_callback(on_servername)
    return default
