"""
pytest configuration and fixtures.
"""

import datetime
import os
import socket
import ssl
import threading
from pathlib import Path
from typing import Generator

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from secretshop.config import GeminiConfig
from secretshop.generators import MimeTable
from secretshop.router import Router
from secretshop.server import GeminiListener
from secretshop.vhost import VirtualHost, VirtualHostRegistry

CN = x509.NameOID.COMMON_NAME


def make_certificate(directory: Path, hostname: str):
    """Write a self-signed certificate and key for `hostname`; return their paths."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(CN, hostname)])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=30))
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(hostname)]), critical=False)
        .sign(key, hashes.SHA256())
    )
    cert_file = directory / f"{hostname}.crt"
    key_file = directory / f"{hostname}.key"
    cert_file.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    key_file.write_bytes(
        key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.TraditionalOpenSSL,
            serialization.NoEncryption(),
        )
    )
    return str(cert_file), str(key_file)


def write_script(path: Path, source: str) -> Path:
    path.write_text(source)
    path.chmod(0o755)
    return path


@pytest.fixture(scope="session")
def certs(tmp_path_factory):
    """Certificates for the two test capsules."""
    directory = tmp_path_factory.mktemp("certs")
    return {
        "localhost": make_certificate(directory, "localhost"),
        "other.test": make_certificate(directory, "other.test"),
    }


@pytest.fixture
def capsule(tmp_path) -> Path:
    """A small document root:

        /index.gmi
        /docs/a.txt, /docs/b.gmi, /docs/.hidden, /docs/private.gmi (0600)
        /empty/
        /cgi-bin/hello
    """
    root = tmp_path / "www"
    root.mkdir()
    (root / "index.gmi").write_bytes(b"# Hello\r\n")

    docs = root / "docs"
    docs.mkdir()
    (docs / "a.txt").write_text("plain text\n")
    (docs / "b.gmi").write_text("# B\n")
    (docs / ".hidden").write_text("secret\n")
    private = docs / "private.gmi"
    private.write_text("nope\n")
    private.chmod(0o600)

    (root / "empty").mkdir()

    cgi = root / "cgi-bin"
    cgi.mkdir()
    write_script(
        cgi / "hello",
        "#!/bin/sh\n"
        "printf '20 text/gemini\\r\\n'\n"
        "echo \"query=$QUERY_STRING path=$PATH_INFO leak=$SECRETSHOP_TEST_SECRET\"\n",
    )

    # Independent of the umask the tests run under
    for dirpath, dirnames, filenames in os.walk(root):
        os.chmod(dirpath, 0o755)
        for name in filenames:
            if name not in ("hello", "private.gmi"):
                os.chmod(os.path.join(dirpath, name), 0o644)
    return root


@pytest.fixture
def vhost(capsule) -> VirtualHost:
    return VirtualHost(
        hostname="localhost",
        root_dir=str(capsule),
        cgi_dir=str(capsule / "cgi-bin"),
    )


@pytest.fixture
def router(vhost) -> Router:
    """Router without TLS material, for tests that never touch a socket."""
    return Router(VirtualHostRegistry([vhost]), MimeTable())


class LiveServer:
    """Listener on 127.0.0.1 running in a background thread."""

    def __init__(self, listener: GeminiListener):
        self.listener = listener
        self.port = listener.bind()
        self._thread = threading.Thread(target=listener.serve_forever, daemon=True)

    def start(self):
        self._thread.start()

    def stop(self):
        self.listener.shutdown()
        self._thread.join(timeout=5.0)

    def request(self, data: bytes, server_name: str = "localhost") -> bytes:
        """Send raw bytes over TLS and return everything the server answers."""
        ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
        with socket.create_connection(("127.0.0.1", self.port), timeout=5) as sock:
            with ctx.wrap_socket(sock, server_hostname=server_name) as tls:
                tls.sendall(data)
                chunks = []
                while True:
                    try:
                        chunk = tls.recv(4096)
                    except (ssl.SSLEOFError, ConnectionResetError):
                        break
                    if not chunk:
                        break
                    chunks.append(chunk)
        return b"".join(chunks)

    def peer_common_name(self, server_name: str) -> str:
        """CN of the certificate the server presents for `server_name`."""
        ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
        with socket.create_connection(("127.0.0.1", self.port), timeout=5) as sock:
            with ctx.wrap_socket(sock, server_hostname=server_name) as tls:
                der = tls.getpeercert(binary_form=True)
        cert = x509.load_der_x509_certificate(der)
        return cert.subject.get_attributes_for_oid(CN)[0].value


@pytest.fixture
def live_server(capsule, certs, tmp_path) -> Generator[LiveServer, None, None]:
    """Two capsules sharing one TLS listener."""
    other_root = tmp_path / "other"
    other_root.mkdir()
    other_root.chmod(0o755)
    (other_root / "index.gmi").write_text("# Other\n")
    (other_root / "index.gmi").chmod(0o644)

    configs = [
        GeminiConfig(
            hostname="localhost",
            port=1965,
            cert_file=certs["localhost"][0],
            key_file=certs["localhost"][1],
            root_dir=str(capsule),
            cgi_dir=str(capsule / "cgi-bin"),
        ),
        GeminiConfig(
            hostname="other.test",
            port=1965,
            cert_file=certs["other.test"][0],
            key_file=certs["other.test"][1],
            root_dir=str(other_root),
        ),
    ]
    registry = VirtualHostRegistry.from_configs(configs)
    router = Router(registry, MimeTable(), port=1965)
    # Router keeps the configured port; the socket takes any free one
    listener = GeminiListener(registry, router, host="127.0.0.1", port=0, timeout=2.0)

    server = LiveServer(listener)
    server.start()
    yield server
    server.stop()
