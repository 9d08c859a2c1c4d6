"""Tests for gopher.py - the gopherhole file server."""

import socket
import threading

import pytest

from secretshop.config import GopherConfig
from secretshop.gopher import GopherServer, item_type


@pytest.fixture
def hole(tmp_path):
    root = tmp_path / "gopher"
    root.mkdir()
    root.chmod(0o755)
    (root / "about.txt").write_text("about\n")
    (root / "logo.gif").write_bytes(b"GIF89a")
    (root / "photo.png").write_bytes(b"\x89PNG")
    (root / ".secret").write_text("hidden")
    sub = root / "sub"
    sub.mkdir()
    sub.chmod(0o755)
    (sub / "note.txt").write_text("note\n")
    for path in (root / "about.txt", root / "logo.gif", root / "photo.png", sub / "note.txt"):
        path.chmod(0o644)
    return root


@pytest.fixture
def server(hole):
    return GopherServer(GopherConfig("gopher.test", 7070, str(hole)))


class TestItemType:
    def test_types(self, hole):
        assert item_type(str(hole / "sub")) == "1"
        assert item_type(str(hole / "about.txt")) == "0"
        assert item_type(str(hole / "logo.gif")) == "g"
        assert item_type(str(hole / "photo.png")) == "I"


class TestRender:
    def test_root_menu(self, server):
        menu = server.render("")
        assert menu == (
            b"0about.txt\t/about.txt\tgopher.test\t7070\r\n"
            b"glogo.gif\t/logo.gif\tgopher.test\t7070\r\n"
            b"Iphoto.png\t/photo.png\tgopher.test\t7070\r\n"
            b"1sub\t/sub\tgopher.test\t7070\r\n"
            b".\r\n"
        )

    def test_subdirectory_has_go_back(self, server):
        menu = server.render("/sub")
        assert menu.startswith(b"1Go Back\t/\tgopher.test\t7070\r\n")
        assert b"0note.txt\t/sub/note.txt\tgopher.test\t7070\r\n" in menu

    def test_file(self, server):
        assert server.render("/about.txt") == b"about\n"

    def test_search_terms_ignored(self, server):
        assert server.render("/about.txt\tquery") == b"about\n"

    def test_gophermap(self, server, hole):
        (hole / "sub" / "gophermap").write_text("iCustom menu\t\terror.host\t1\r\n")
        assert server.render("/sub/") == b"iCustom menu\t\terror.host\t1\r\n"

    def test_dots(self, server):
        assert server.render("/../etc/passwd").startswith(b"3Dots in selector")

    def test_missing(self, server):
        assert server.render("/nope").startswith(b"3Resource not found")

    def test_private(self, server, hole):
        (hole / "about.txt").chmod(0o600)
        assert server.render("/about.txt").startswith(b"3")


class TestServe:
    def test_round_trip(self, hole):
        srv = GopherServer(GopherConfig("gopher.test", 7070, str(hole)), host="127.0.0.1")
        srv.port = 0
        port = srv.bind()
        thread = threading.Thread(target=srv.serve_forever, daemon=True)
        thread.start()
        try:
            with socket.create_connection(("127.0.0.1", port), timeout=5) as sock:
                sock.sendall(b"/about.txt\r\n")
                data = b""
                while True:
                    chunk = sock.recv(4096)
                    if not chunk:
                        break
                    data += chunk
            assert data == b"about\n"
        finally:
            srv.shutdown()
            thread.join(timeout=5)
