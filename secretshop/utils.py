import logging
import socket
import threading
from dataclasses import dataclass
from typing import Optional

from OpenSSL import SSL

from .config import MAX_URL_BYTES
from .status import is_success

logger = logging.getLogger(__name__)

CRLF = b"\r\n"
MAX_REQUEST_BYTES = MAX_URL_BYTES + len(CRLF)


class TransportError(Exception):
    """The connection broke; there is nobody left to answer."""


@dataclass(frozen=True)
class Request:
    """A parsed request line. `path` and `query` are still percent-encoded."""

    url: str
    scheme: str
    hostname: str
    netloc: str
    port: Optional[int]
    path: str
    query: str


@dataclass(frozen=True)
class Response:
    status: int
    meta: str
    body: bytes = b""

    def header(self) -> bytes:
        return f"{int(self.status)} {self.meta}".encode("utf-8") + CRLF

    def to_bytes(self) -> bytes:
        # Only success responses carry a body
        if is_success(self.status):
            return self.header() + self.body
        return self.header()


def recv_line(conn) -> bytes:
    """Read one request line, a byte at a time, up to MAX_REQUEST_BYTES.

    Returns the accumulated bytes, terminator included. When the peer sends
    more than the bound without a CRLF the returned bytes do not end with
    one; the caller answers 59 without looking at them.

    Raises:
        TransportError: On EOF before the terminator or any socket/TLS error
    """
    data = bytearray()
    while len(data) < MAX_REQUEST_BYTES:
        try:
            b = conn.recv(1)
        except SSL.ZeroReturnError:
            raise TransportError("connection closed before end of request") from None
        except (SSL.Error, OSError) as e:
            raise TransportError(f"read failed: {e}") from e
        if not b:
            raise TransportError("connection closed before end of request")
        data += b
        if data.endswith(CRLF):
            break
    return bytes(data)


def gem_send(conn, response: Response):
    """Write the status line, and the body for 2x responses."""
    try:
        conn.sendall(response.to_bytes())
    except (SSL.Error, OSError) as e:
        raise TransportError(f"write failed: {e}") from e


def close_quietly(ssl_conn: SSL.Connection, sock: socket.socket):
    """TLS close_notify, then drop the socket. The peer may already be gone."""
    try:
        ssl_conn.shutdown()
    except (SSL.Error, OSError) as e:
        logger.debug("TLS shutdown: %s", e)
    try:
        sock.close()
    except OSError as e:
        logger.debug("close: %s", e)


class Watchdog:
    """Shut `sock` down if the guarded block outlives `timeout` seconds.

    Shutting the socket down aborts any blocking read or write on it, which
    then surfaces as a TransportError in the handler.
    """

    def __init__(self, sock: socket.socket, timeout: float):
        self.sock = sock
        self.timeout = timeout
        self.expired = False
        self._timer = None

    def _expire(self):
        self.expired = True
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass  # already closed

    def __enter__(self):
        if self.timeout:
            self._timer = threading.Timer(self.timeout, self._expire)
            self._timer.daemon = True
            self._timer.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        if self._timer is not None:
            self._timer.cancel()
        if self.expired and exc_type is TransportError:
            logger.debug("Connection timed out after %ss", self.timeout)
        return False
