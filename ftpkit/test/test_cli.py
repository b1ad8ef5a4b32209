# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

import argparse
import io
from unittest.mock import patch

import pytest

import ftpkit.__main__
from ftpkit import __ver__
from ftpkit.__main__ import build_authorizer
from ftpkit.__main__ import build_store
from ftpkit.__main__ import main
from ftpkit.__main__ import parse_concurrency
from ftpkit.__main__ import parse_encoding
from ftpkit.__main__ import parse_port_range
from ftpkit.__main__ import parse_virtual_path
from ftpkit.handlers import FTPHandler
from ftpkit.servers import FTPServer
from ftpkit.servers import ThreadedFTPServer

from . import FtpkitTestCase


class _ReturningServer(FTPServer):
    """serve_forever() returns at once instead of serving."""

    def serve_forever(self, *args, **kwargs):
        self.bound_to = self.address
        self.close_all()


class _ReturningThreadedServer(ThreadedFTPServer):

    def serve_forever(self, *args, **kwargs):
        self.close_all()


def run(*argv):
    """main() on an ephemeral port."""
    return main([*argv, "-p", "0"])


class TestArgumentTypes(FtpkitTestCase):

    def test_port_range(self):
        assert parse_port_range("1000-1002") == [1000, 1001, 1002]
        for value in ("1000", "a-b", "2000-1000", "0-10", "10-70000", "-"):
            with pytest.raises(argparse.ArgumentTypeError):
                parse_port_range(value)

    def test_virtual_path(self):
        assert parse_virtual_path("/pub") == "/pub"
        with pytest.raises(argparse.ArgumentTypeError, match="absolute"):
            parse_virtual_path("pub")

    def test_encoding(self):
        assert parse_encoding("latin-1") == "latin-1"
        with pytest.raises(argparse.ArgumentTypeError):
            parse_encoding("klingon")

    def test_concurrency(self):
        assert parse_concurrency("async") is FTPServer
        assert parse_concurrency("multi-thread") is ThreadedFTPServer
        with pytest.raises(argparse.ArgumentTypeError, match="choose"):
            parse_concurrency("multi-proc")


class TestSetupHelpers(FtpkitTestCase):

    def test_build_store_parents_first(self):
        store = build_store(["/a", "/a/b", "/c"])
        assert store.listdir("/") == ["a", "c"]
        assert store.listdir("/a") == ["b"]

    def test_build_store_missing_parent(self):
        with pytest.raises(SystemExit, match="can't create '/x/y'"):
            build_store(["/x/y"])

    def test_build_authorizer(self):
        opts = argparse.Namespace(username=None, password=None)
        assert build_authorizer(opts).has_user("anonymous")
        opts = argparse.Namespace(username="joe", password="secret")
        authorizer = build_authorizer(opts)
        assert authorizer.has_user("joe")
        assert not authorizer.has_user("anonymous")


class TestMain(FtpkitTestCase):

    def setUp(self):
        super().setUp()
        patchers = [
            patch("ftpkit.__main__.config_logging"),
            patch.dict(
                ftpkit.__main__.CONCURRENCY,
                {
                    "async": _ReturningServer,
                    "multi-thread": _ReturningThreadedServer,
                },
            ),
        ]
        for p in patchers:
            p.start()
            self.addCleanup(p.stop)

    def test_defaults(self):
        ftpd = run()
        assert type(ftpd) is _ReturningServer
        assert ftpd.handler is FTPHandler
        assert ftpd.handler.authorizer.has_user("anonymous")
        assert ftpd.store.listdir("/") == []

    def test_missing_values(self):
        for opt in ("-i", "--interface", "-p", "-m", "-r", "-c"):
            with pytest.raises(SystemExit):
                main([opt])

    def test_interface_and_port(self):
        ftpd = main(["--interface", "127.0.0.1", "--port", "0"])
        assert ftpd.bound_to[0] == "127.0.0.1"
        with pytest.raises(SystemExit):
            main(["-p", "twenty-one"])

    def test_mkdir(self):
        ftpd = run("-m", "/pub", "--mkdir", "/pub/incoming")
        assert ftpd.store.listdir("/") == ["pub"]
        assert ftpd.store.listdir("/pub") == ["incoming"]
        with pytest.raises(SystemExit):
            run("-m", "pub")
        with pytest.raises(SystemExit, match="can't create"):
            run("-m", "/a/b")

    def test_nat_address(self):
        for opt in ("-n", "--nat-address"):
            ftpd = run(opt, "10.0.0.1")
            assert ftpd.handler.masquerade_address == "10.0.0.1"

    def test_passive_range(self):
        ftpd = run("-r", "60000-60010")
        assert ftpd.handler.passive_ports == list(range(60000, 60011))
        with pytest.raises(SystemExit):
            run("-r", "60010-60000")

    def test_concurrency(self):
        assert type(run("-c", "multi-thread")) is _ReturningThreadedServer
        assert type(run("--concurrency", "async")) is _ReturningServer
        with pytest.raises(SystemExit):
            run("-c", "multi-proc")

    def test_debug(self):
        run("--debug")
        ftpkit.__main__.config_logging.assert_called_once_with(
            level=ftpkit.__main__.logging.DEBUG
        )
        with pytest.raises(SystemExit):
            main(["-D", "yes"])

    def test_version(self):
        for opt in ("-V", "--version"):
            with patch("sys.stdout", new_callable=io.StringIO) as out:
                with pytest.raises(SystemExit):
                    run(opt)
            assert out.getvalue().strip() == f"ftpkit {__ver__}"

    def test_username_requires_password(self):
        ftpd = run("-u", "joe", "-P", "secret")
        assert ftpd.handler.authorizer.has_user("joe")
        assert not ftpd.handler.authorizer.has_user("anonymous")
        with patch("sys.stderr", new_callable=io.StringIO) as err:
            with pytest.raises(SystemExit):
                run("--username", "joe")
        assert "--password" in err.getvalue()

    def test_handler_and_limit_options(self):
        ftpd = run(
            "--timeout", "10",
            "--banner", "hi there",
            "--max-cons", "10",
            "--max-cons-per-ip", "2",
            "--max-login-attempts", "1",
            "--permit-foreign-addresses",
            "--permit-privileged-ports",
            "--encoding", "latin-1",
        )
        assert FTPHandler.timeout == 10
        assert FTPHandler.dtp_handler.timeout == 10
        assert FTPHandler.banner == "hi there"
        assert FTPHandler.max_login_attempts == 1
        assert FTPHandler.permit_foreign_addresses
        assert FTPHandler.permit_privileged_ports
        assert FTPHandler.encoding == "latin-1"
        assert ftpd.max_cons == 10
        assert ftpd.max_cons_per_ip == 2
        with pytest.raises(SystemExit):
            run("--encoding", "klingon")
