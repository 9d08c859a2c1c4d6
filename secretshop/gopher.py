"""Gopher (RFC 1436) file server for the gopherholes in the config.

Runs beside the Gemini listeners and shares nothing with them but the
filesystem rules: no `..` in selectors, only world-readable entries.
"""

import logging
import mimetypes
import os
import posixpath
import socket
import stat
import threading
from typing import Optional

from .config import GOPHER_PORT, HOST, TIMEOUT_S, GopherConfig
from .gate import filesystem_path, has_dots
from .generators import world_readable
from .server import listening_socket
from .utils import CRLF, TransportError, recv_line

logger = logging.getLogger(__name__)

GOPHERMAP = "gophermap"
TERMINATOR = b".\r\n"

DIRECTORY = "1"
TEXT = "0"
ERROR = "3"
BINARY = "9"
GIF = "g"
IMAGE = "I"


def item_type(path: str) -> str:
    if os.path.isdir(path):
        return DIRECTORY
    mime, _ = mimetypes.guess_type(path)
    if mime is None or mime.startswith("text/"):
        return TEXT
    if mime == "image/gif":
        return GIF
    if mime.startswith("image/"):
        return IMAGE
    return BINARY


def menu_line(kind: str, display: str, selector: str, host: str, port: int) -> bytes:
    return f"{kind}{display}\t{selector}\t{host}\t{port}".encode("utf-8") + CRLF


def error_page(message: str) -> bytes:
    return menu_line(ERROR, message, "", "error.host", 1) + TERMINATOR


class GopherServer:
    """Serve one gopherhole's root directory."""

    kind = "gopher"

    def __init__(self, config: GopherConfig, host: str = HOST, timeout: float = TIMEOUT_S):
        self.config = config
        self.root_dir = os.path.abspath(config.root_dir)
        self.host = host
        self.port = config.port or GOPHER_PORT
        self.timeout = timeout
        self._socket: Optional[socket.socket] = None
        self._closing = threading.Event()

    def render(self, selector: str) -> bytes:
        """Bytes to send back for `selector`."""
        selector = selector.split("\t", 1)[0] or "/"
        if has_dots(selector):
            return error_page("Dots in selector, assuming bad faith.")

        path = filesystem_path(self.root_dir, selector)
        try:
            st = os.stat(path)
        except (OSError, ValueError):
            return error_page("Resource not found")
        if not world_readable(st.st_mode):
            return error_page("Resource not found")

        if stat.S_ISDIR(st.st_mode):
            return self.render_directory(selector, path)
        try:
            with open(path, "rb") as f:
                return f.read()
        except OSError as e:
            logger.warning("Failed to read %s: %s", path, e)
            return error_page("Unable to read resource")

    def render_directory(self, selector: str, path: str) -> bytes:
        gophermap = os.path.join(path, GOPHERMAP)
        if os.path.isfile(gophermap):
            try:
                with open(gophermap, "rb") as f:
                    return f.read()
            except OSError as e:
                logger.warning("Failed to read %s: %s", gophermap, e)

        try:
            names = sorted(os.listdir(path))
        except OSError as e:
            logger.warning("Unable to list %s: %s", path, e)
            return error_page("Unable to show directory listing")

        hostname, port = self.config.hostname, self.port
        lines = []
        base = selector.rstrip("/")
        if base:
            parent = posixpath.dirname(base) or "/"
            lines.append(menu_line(DIRECTORY, "Go Back", parent, hostname, port))
        for name in names:
            if name.startswith("."):
                continue
            entry = os.path.join(path, name)
            try:
                if not world_readable(os.stat(entry).st_mode):
                    continue
            except OSError:
                continue
            lines.append(menu_line(item_type(entry), name, f"{base}/{name}", hostname, port))
        lines.append(TERMINATOR)
        return b"".join(lines)

    def handle(self, client: socket.socket, addr):
        client.settimeout(self.timeout)
        try:
            raw = recv_line(client)
            if not raw.endswith(CRLF):
                payload = error_page("Request too large")
            else:
                try:
                    payload = self.render(raw[: -len(CRLF)].decode("utf-8"))
                except UnicodeDecodeError:
                    payload = error_page("Selector contains non UTF-8 characters")
            client.sendall(payload)
            logger.info(
                '%s gopher "%s" %d bytes',
                addr[0], raw.rstrip(CRLF).decode("utf-8", "replace"), len(payload),
            )
        except TransportError as e:
            logger.warning("Couldn't serve gopher request from %s: %s", addr[0], e)
        except OSError as e:
            logger.warning("Gopher write to %s failed: %s", addr[0], e)
        finally:
            client.close()

    def bind(self) -> int:
        self._socket = listening_socket(self.host, self.port)
        bound = self._socket.getsockname()[1]
        logger.info("Gopher listening on port %d for %s", bound, self.config.hostname)
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
            threading.Thread(target=self.handle, args=(client, addr), daemon=True).start()

    def shutdown(self):
        self._closing.set()
        if self._socket is not None:
            try:
                self._socket.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass  # never connected
            self._socket.close()
