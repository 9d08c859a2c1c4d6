"""Gemini listener and per-connection handler (pyOpenSSL)."""

import logging
import socket
import threading
from typing import Iterable, Optional

from OpenSSL import SSL

from .config import GEMINI_PORT, HOST, TIMEOUT_S, GeminiConfig
from .generators import MimeTable
from .router import Router
from .status import Status
from .utils import (
    CRLF,
    Response,
    TransportError,
    Watchdog,
    close_quietly,
    gem_send,
    recv_line,
)
from .vhost import VirtualHostRegistry

logger = logging.getLogger(__name__)

BACKLOG = 16
MAX_LOGGED = 200


def respond(raw: bytes, router: Router, remote_addr: str) -> Response:
    """Turn the bytes read off the wire into exactly one response."""
    if not raw.endswith(CRLF):
        return Response(Status.BAD_REQUEST, "Request too large")
    try:
        line = raw[: -len(CRLF)].decode("utf-8")
    except UnicodeDecodeError:
        return Response(Status.BAD_REQUEST, "URL contains non UTF-8 characters")

    try:
        return router.route(line, remote_addr)
    except Exception:
        logger.exception("Internal error serving %r to %s", line, remote_addr)
        return Response(Status.TEMPORARY_FAILURE, "Temporary failure")


def handle(
    ssl_conn: SSL.Connection,
    sock: socket.socket,
    addr,
    router: Router,
    timeout: float = TIMEOUT_S,
):
    """Serve one connection: handshake, one request line, one response, close."""
    remote = addr[0]
    try:
        # 1) Handshake + request line
        with Watchdog(sock, timeout):
            ssl_conn.set_accept_state()
            try:
                ssl_conn.do_handshake()
            except (SSL.Error, OSError) as e:
                raise TransportError(f"handshake failed: {e}") from e
            raw = recv_line(ssl_conn)

        # 2) Route
        response = respond(raw, router, remote)

        # 3) Reply
        with Watchdog(sock, timeout):
            gem_send(ssl_conn, response)
        logger.info(
            '%s "%s" %d %s',
            remote, raw.rstrip(b"\r\n").decode("utf-8", "replace")[:MAX_LOGGED],
            response.status, response.meta,
        )
    except TransportError as e:
        logger.warning("Couldn't serve request from %s: %s", remote, e)
    finally:
        close_quietly(ssl_conn, sock)


def listening_socket(host: str, port: int) -> socket.socket:
    """Bind a TCP socket; dual-stack v4+v6 when `host` allows it."""
    if host and ":" not in host:
        base = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    else:
        try:
            base = socket.socket(socket.AF_INET6, socket.SOCK_STREAM)
        except OSError:
            base = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        if base.family == socket.AF_INET6:
            try:
                base.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
            except (AttributeError, OSError):
                logger.debug("Dual-stack not available, IPv6 only")
    base.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    base.bind((host, port))
    base.listen(BACKLOG)
    return base


class GeminiListener:
    """One accept loop per port; one thread per accepted connection."""

    kind = "gemini"

    def __init__(
        self,
        registry: VirtualHostRegistry,
        router: Router,
        host: str = HOST,
        port: int = GEMINI_PORT,
        timeout: float = TIMEOUT_S,
    ):
        self.registry = registry
        self.router = router
        self.host = host
        self.port = port
        self.timeout = timeout
        self.context = registry.tls_context()
        self._socket: Optional[socket.socket] = None
        self._closing = threading.Event()

    @classmethod
    def from_configs(
        cls,
        configs: Iterable[GeminiConfig],
        host: str = HOST,
        timeout: float = TIMEOUT_S,
        mimes: Optional[MimeTable] = None,
    ) -> "GeminiListener":
        """Build the listener for capsules that share a port.

        Raises:
            ConfigError: If a certificate or key cannot be loaded
        """
        configs = list(configs)
        ports = {c.port for c in configs}
        if len(ports) != 1:
            raise ValueError(f"capsules of one listener must share a port, got {sorted(ports)}")
        port = ports.pop()
        registry = VirtualHostRegistry.from_configs(configs)
        router = Router(registry, mimes or MimeTable(), port=port)
        return cls(registry, router, host=host, port=port, timeout=timeout)

    def bind(self) -> int:
        """Open the listening socket; returns the bound port."""
        self._socket = listening_socket(self.host, self.port)
        bound = self._socket.getsockname()[1]
        logger.info(
            "Gemini listening on port %d for %s", bound, ", ".join(self.registry.hostnames)
        )
        return bound

    def serve_forever(self):
        if self._socket is None:
            self.bind()
        while not self._closing.is_set():
            try:
                client, addr = self._socket.accept()
            except OSError as e:
                if self._closing.is_set():
                    break
                logger.error("Accept failed on port %d: %s", self.port, e)
                continue
            try:
                ssl_conn = SSL.Connection(self.context, client)
            except SSL.Error as e:
                logger.error("Cannot set up TLS for %s: %s", addr[0], e)
                client.close()
                continue
            worker = threading.Thread(
                target=handle,
                args=(ssl_conn, client, addr, self.router, self.timeout),
                daemon=True,
            )
            worker.start()

    def shutdown(self):
        self._closing.set()
        if self._socket is not None:
            try:
                self._socket.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass  # never connected
            self._socket.close()
