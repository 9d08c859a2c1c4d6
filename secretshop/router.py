"""Validate a request line and dispatch it to the capsule that owns it."""

import logging
from urllib.parse import urlsplit

from .config import CGI_TIMEOUT_S, GEMINI_PORT
from .gate import resolve
from .generators import MimeTable
from .status import Status
from .utils import Request, Response
from .vhost import VirtualHostRegistry

logger = logging.getLogger(__name__)

SCHEME = "gemini"


class BadRequest(ValueError):
    """The request line is not a usable URL."""


def parse_url(line: str) -> Request:
    """Split a request line into a Request, defaulting the scheme.

    Raises:
        BadRequest: On control characters or a URL urlsplit cannot take,
            including a non-numeric or out of range port
    """
    if any(ord(c) < 0x20 or ord(c) == 0x7F for c in line):
        raise BadRequest("control characters in URL")
    try:
        parts = urlsplit(line)
        port = parts.port
    except ValueError as e:
        raise BadRequest(str(e)) from e

    return Request(
        url=line,
        scheme=parts.scheme or SCHEME,
        hostname=parts.hostname or "",
        netloc=parts.netloc,
        port=port,
        path=parts.path,
        query=parts.query,
    )


class Router:
    """Checks scheme, port and host, then hands the path to the gate.

    Holds only read-only state, so one instance serves every connection of
    a listener.
    """

    def __init__(
        self,
        registry: VirtualHostRegistry,
        mimes: MimeTable,
        port: int = GEMINI_PORT,
        cgi_timeout: float = CGI_TIMEOUT_S,
    ):
        self.registry = registry
        self.mimes = mimes
        self.port = port
        self.cgi_timeout = cgi_timeout

    def parse(self, line: str):
        """Return (request, None) when the line is acceptable, else (None, rejection)."""
        try:
            request = parse_url(line)
        except BadRequest as e:
            logger.debug("Bad request %r: %s", line, e)
            return None, Response(Status.BAD_REQUEST, "URL invalid")

        if request.scheme != SCHEME:
            return None, Response(
                Status.PROXY_REQUEST_REFUSED, "Proxying by Scheme not currently supported"
            )
        if request.port is not None and request.port != self.port:
            return None, Response(
                Status.PROXY_REQUEST_REFUSED, "Proxying by Port not currently supported"
            )
        if not request.hostname:
            return None, Response(Status.BAD_REQUEST, "Need to specify a host")
        if request.hostname not in self.registry:
            return None, Response(
                Status.PROXY_REQUEST_REFUSED, "Proxying by Hostname not currently supported"
            )
        return request, None

    def route(self, line: str, remote_addr: str) -> Response:
        request, rejection = self.parse(line)
        if rejection is not None:
            return rejection
        vhost = self.registry.lookup(request.hostname)
        return resolve(
            vhost,
            request,
            self.mimes,
            remote_addr=remote_addr,
            server_port=self.port,
            cgi_timeout=self.cgi_timeout,
        )
