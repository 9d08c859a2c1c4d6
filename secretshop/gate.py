"""Map a request path onto a capsule's document root.

The gate owns the security decisions: no parent-directory segments, nothing
that is not world-readable. What survives is handed to a generator.
"""

import logging
import os
import stat
from urllib.parse import unquote, urlunsplit

from .config import CGI_TIMEOUT_S, MAX_URL_BYTES
from .generators import (
    MimeTable,
    executable,
    generate_cgi,
    generate_directory,
    generate_file,
    world_readable,
)
from .status import Status
from .utils import Request, Response
from .vhost import VirtualHost

logger = logging.getLogger(__name__)


def has_dots(path: str) -> bool:
    """True if `path` has a `..` segment, before or after percent-decoding."""
    for candidate in (path, unquote(path)):
        for sep in ("/", "\\"):
            if ".." in candidate.split(sep):
                return True
    return False


def filesystem_path(root_dir: str, url_path: str) -> str:
    return os.path.join(root_dir, unquote(url_path).lstrip("/"))


def in_directory(path: str, directory: str) -> bool:
    if not directory:
        return False
    path = os.path.abspath(path)
    try:
        return path != directory and os.path.commonpath([path, directory]) == directory
    except ValueError:
        return False


def redirect_to_directory(request: Request) -> Response:
    target = urlunsplit((request.scheme, request.netloc, request.path + "/", request.query, ""))
    # The meta line is bounded like the request line
    if len(target.encode("utf-8")) > MAX_URL_BYTES:
        return Response(Status.BAD_REQUEST, "Request too large")
    return Response(Status.REDIRECT_PERMANENT, target)


def resolve(
    vhost: VirtualHost,
    request: Request,
    mimes: MimeTable,
    remote_addr: str,
    server_port: int,
    cgi_timeout: float = CGI_TIMEOUT_S,
) -> Response:
    if has_dots(request.path):
        return Response(Status.PERMANENT_FAILURE, "Dots in path, assuming bad faith.")

    selector = filesystem_path(vhost.root_dir, request.path)
    try:
        st = os.stat(selector)
    except (OSError, ValueError):
        return Response(Status.NOT_FOUND, "Couldn't find file")

    if not world_readable(st.st_mode):
        return Response(Status.TEMPORARY_FAILURE, "Unable to access file")

    if stat.S_ISDIR(st.st_mode):
        if not request.path.endswith("/"):
            return redirect_to_directory(request)
        return generate_directory(selector, mimes)

    if not stat.S_ISREG(st.st_mode):
        # Sockets, fifos, devices
        return Response(Status.NOT_FOUND, "Couldn't find file")

    if in_directory(selector, vhost.cgi_dir) and executable(st.st_mode):
        logger.debug("Running CGI %s", selector)
        return generate_cgi(selector, request, remote_addr, server_port, cgi_timeout)
    return generate_file(selector, mimes)
