"""Response generators: static files, directory listings and CGI scripts."""

import logging
import mimetypes
import os
import stat
import subprocess
from urllib.parse import quote
from typing import Dict

from . import SOFTWARE
from .config import CGI_TIMEOUT_S, MAX_URL_BYTES
from .status import Status
from .utils import Request, Response

logger = logging.getLogger(__name__)

DEFAULT_MIME = "text/gemini; charset=utf-8"
INDEX_FILES = ("index.gmi", "index.gemini")


class MimeTable:
    """Extension -> media type, built once and shared read-only."""

    def __init__(self, extra: Dict[str, str] = None):
        self._types = mimetypes.MimeTypes()
        self._types.add_type("text/gemini", ".gmi")
        self._types.add_type("text/gemini", ".gemini")
        for ext, mime in (extra or {}).items():
            self._types.add_type(mime, ext)

    def guess(self, filename: str) -> str:
        mime, _ = self._types.guess_type(filename, strict=False)
        if not mime:
            return DEFAULT_MIME
        if mime.startswith("text/"):
            return f"{mime}; charset=utf-8"
        return mime


def world_readable(mode: int) -> bool:
    return bool(mode & stat.S_IROTH)


def executable(mode: int) -> bool:
    return bool(mode & (stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH))


def generate_file(path: str, mimes: MimeTable) -> Response:
    try:
        with open(path, "rb") as f:
            body = f.read()
    except OSError as e:
        # Gone or unreadable since the gate stat'ed it
        logger.warning("Failed to read %s: %s", path, e)
        return Response(Status.TEMPORARY_FAILURE, "Unable to read file")
    return Response(Status.SUCCESS, mimes.guess(path), body)


def generate_directory(path: str, mimes: MimeTable) -> Response:
    """Serve the directory's index file, or a listing of visible entries."""
    try:
        names = sorted(os.listdir(path))
    except OSError as e:
        logger.warning("Unable to list %s: %s", path, e)
        return Response(Status.TEMPORARY_FAILURE, "Unable to show directory listing")

    visible = []
    for name in names:
        # Hidden files stay hidden
        if name.startswith("."):
            continue
        try:
            mode = os.stat(os.path.join(path, name)).st_mode
        except OSError:
            continue
        if world_readable(mode):
            visible.append(name)

    for index in INDEX_FILES:
        if index in visible:
            return generate_file(os.path.join(path, index), mimes)

    lines = ["# Directory Contents\r\n"]
    lines.extend(f"=> {quote(name)} {name}\r\n" for name in visible)
    return Response(Status.SUCCESS, "text/gemini", "".join(lines).encode("utf-8"))


def cgi_environ(request: Request, remote_addr: str, server_port: int) -> Dict[str, str]:
    """CGI variables for one request.

    Built from scratch: nothing leaks from the server's own environment.
    """
    return {
        "GEMINI_URL": request.url,
        "HOSTNAME": request.hostname,
        "PATH_INFO": request.path,
        "QUERY_STRING": request.query,
        "REMOTE_ADDR": remote_addr,
        "REMOTE_HOST": remote_addr,
        "SERVER_NAME": request.hostname,
        "SERVER_PORT": str(server_port),
        "SERVER_PROTOCOL": "GEMINI",
        "SERVER_SOFTWARE": SOFTWARE,
    }


def parse_cgi_output(script: str, output: bytes) -> Response:
    """Split script output into its status line and body.

    The first line must be `<status> <meta>` with a status in 0..69. The
    meta is kept as the script wrote it and the rest of the output is the
    body, byte for byte.
    """
    header, _, body = output.partition(b"\n")
    try:
        line = header.decode("utf-8").rstrip("\r").lstrip()
    except UnicodeDecodeError:
        logger.warning("CGI %s wrote a non UTF-8 status line", script)
        return Response(Status.CGI_ERROR, "Error running CGI process")

    parts = line.split(maxsplit=1)
    try:
        status = int(parts[0])
    except (IndexError, ValueError):
        logger.warning("CGI %s wrote a bad status line: %r", script, line)
        return Response(Status.CGI_ERROR, "Error running CGI process")
    if status < 0 or status > 69:
        logger.warning("CGI script %s returned bad status %d", script, status)
        return Response(Status.CGI_ERROR, "Error running CGI process")

    meta = line[len(parts[0]):].lstrip(" \t") if len(parts) > 1 else ""
    if len(meta.encode("utf-8")) > MAX_URL_BYTES:
        logger.warning("CGI %s wrote a meta longer than %d bytes", script, MAX_URL_BYTES)
        return Response(Status.CGI_ERROR, "Error running CGI process")
    return Response(status, meta, body)


def generate_cgi(
    script: str,
    request: Request,
    remote_addr: str,
    server_port: int,
    timeout: float = CGI_TIMEOUT_S,
) -> Response:
    """Run `script` and relay its output. The process is killed on timeout."""
    try:
        proc = subprocess.run(
            [script],
            env=cgi_environ(request, remote_addr, server_port),
            cwd=os.path.dirname(script),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired:
        logger.warning("CGI %s timed out", request.url)
        return Response(Status.CGI_ERROR, "CGI process timed out")
    except OSError as e:
        logger.warning("Error running CGI process %s: %s", script, e)
        return Response(Status.CGI_ERROR, "Error running CGI process")

    if proc.returncode != 0:
        logger.warning(
            "CGI %s exited with %d: %s",
            script, proc.returncode, proc.stderr.decode("utf-8", "replace").strip(),
        )
        return Response(Status.CGI_ERROR, "Error running CGI process")

    return parse_cgi_output(script, proc.stdout)
