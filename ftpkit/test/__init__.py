# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

"""Helpers shared by the test modules: constants, the base TestCase
and a server running in a background thread.
"""

import functools
import logging
import os
import socket
import sys
import threading
import unittest
import warnings

import psutil

from ftpkit.authorizers import DummyAuthorizer
from ftpkit.filesystems import MemoryStore
from ftpkit.handlers import FTPHandler
from ftpkit.ioloop import IOLoop
from ftpkit.servers import FTPServer

POSIX = os.name == "posix"
WINDOWS = os.name == "nt"
CI_TESTING = "GITHUB_ACTIONS" in os.environ
PYTEST_PARALLEL = "PYTEST_XDIST_WORKER" in os.environ

# an IP address resolves faster than "localhost" on every connect()
try:
    HOST = socket.gethostbyname("localhost")
except OSError:
    HOST = "localhost"

USER = "user"
PASSWD = "12345"
HOME = "/"
BUFSIZE = 1024
GLOBAL_TIMEOUT = 6 if CI_TESTING else 2
NO_RETRIES = 15 if CI_TESTING else 5


class FtpkitTestCase(unittest.TestCase):
    """Base class of every test case: restores the default class
    attribute options before each test.
    """

    def setUp(self):
        super().setUp()
        reset_server_opts()

    def __str__(self):
        # "ftpkit.test.test_x.TestFoo.test_bar"
        mod = self.__class__.__module__
        if not mod.startswith("ftpkit."):
            mod = f"ftpkit.test.{mod}"
        return f"{mod}.{self.__class__.__name__}.{self._testMethodName}"


def close_client(ftp):
    """QUIT and close an ftplib.FTP instance; the 221 proves no
    other reply was still in flight.
    """
    try:
        if ftp.sock is None:
            return
        try:
            resp = ftp.quit()
        except Exception:
            return
        assert resp.startswith("221"), resp
    finally:
        ftp.close()


def disable_log_warning(fun):
    """Run the decorated test with the "ftpkit" logger at ERROR."""

    @functools.wraps(fun)
    def wrapper(self, *args, **kwargs):
        logger = logging.getLogger("ftpkit")
        saved = logger.level
        logger.setLevel(logging.ERROR)
        try:
            return fun(self, *args, **kwargs)
        finally:
            logger.setLevel(saved)

    return wrapper


def retry_on_failure(fun):
    """Rerun a timing-sensitive test (tearDown() and setUp() included)
    up to NO_RETRIES times before letting its AssertionError through.
    """

    @functools.wraps(fun)
    def wrapper(self, *args, **kwargs):
        attempt = 1
        while True:
            try:
                return fun(self, *args, **kwargs)
            except AssertionError as exc:
                if attempt >= NO_RETRIES:
                    raise
                msg = f"{exc!r}, retrying"
                print(msg, file=sys.stderr)  # noqa: T201
                if PYTEST_PARALLEL:
                    warnings.warn(msg, ResourceWarning, stacklevel=2)
                attempt += 1
                self.tearDown()
                self.setUp()

    return wrapper


def setup_server(handler, server_class, addr=None, store=None):
    """A server listening on an ephemeral port of HOST, with USER and
    anonymous access, on an IO loop of its own (never the global one
    the clients use).
    """
    authorizer = DummyAuthorizer()
    authorizer.add_user(USER, PASSWD, HOME)
    authorizer.add_anonymous(HOME)
    handler.authorizer = authorizer
    # small buffers mean more loop iterations per transfer
    handler.dtp_handler.ac_in_buffer_size = 4096
    handler.dtp_handler.ac_out_buffer_size = 4096
    return server_class(
        addr or (HOST, 0),
        handler,
        ioloop=IOLoop(),
        store=store if store is not None else MemoryStore(),
    )


def assert_free_resources(parent_pid=None):
    threads = threading.enumerate()
    assert len(threads) == 1, threads
    if not POSIX:
        return
    proc = psutil.Process(parent_pid or os.getpid())
    cons = [
        c
        for c in proc.net_connections("tcp")
        if c.status != psutil.CONN_CLOSE_WAIT
    ]
    if cons:
        warnings.warn(
            f"some connections didn't close (pid={os.getpid()!r}) {cons!r}",
            UserWarning,
            stacklevel=2,
        )


# default value of every class attribute option touched by the tests
_DEFAULT_OPTS = {
    "FTPHandler": {
        "store": None,
        "banner": "ftpkit ready.",
        "masquerade_address": None,
        "max_login_attempts": 3,
        "max_pending_lines": 100,
        "passive_ports": None,
        "permit_foreign_addresses": False,
        "permit_privileged_ports": False,
        "timeout": 300,
        "unicode_errors": "replace",
        "ac_in_buffer_size": 4096,
        "ac_out_buffer_size": 4096,
        "encoding": "utf8",
    },
    "DTPHandler": {
        "timeout": 300,
        "ac_in_buffer_size": 4096,
        "ac_out_buffer_size": 4096,
    },
    "PassiveDTP": {"timeout": 30},
    "ActiveDTP": {"timeout": 30},
    "FTPServer": {"max_cons": 0, "max_cons_per_ip": 0},
    "ThreadedFTPServer": {"max_cons": 0, "max_cons_per_ip": 0},
    "FTPClient": {
        "passive": True,
        "data_timeout": 30,
        "timeout": None,
        "trust_server_pasv_ipv4_address": False,
        "encoding": "utf8",
    },
}


def reset_server_opts():
    """Options are class attributes: a test changing one must not
    leak it into the next test.
    """
    import ftpkit.client  # noqa: PLC0415
    import ftpkit.handlers  # noqa: PLC0415
    import ftpkit.servers  # noqa: PLC0415

    classes = {}
    for mod in (ftpkit.handlers, ftpkit.servers, ftpkit.client):
        for name in _DEFAULT_OPTS:
            if hasattr(mod, name):
                classes[name] = getattr(mod, name)
    for name, opts in _DEFAULT_OPTS.items():
        for attr, value in opts.items():
            setattr(classes[name], attr, value)
    classes["FTPHandler"].authorizer = DummyAuthorizer()


class FtpdThreadWrapper(threading.Thread):
    """A test server polled from a daemon thread. It can be start()ed
    and stop()ped; stop() also checks nothing was left open.
    """

    handler = FTPHandler
    server_class = FTPServer
    poll_interval = 0.001 if CI_TESTING else 0.000001
    daemon = True

    def __init__(self, addr=None, store=None):
        super().__init__(name="test-ftpd")
        self.parent_pid = os.getpid()
        self.server = setup_server(
            self.handler, self.server_class, addr=addr, store=store
        )
        self.host, self.port = self.server.address
        self.store = self.server.store
        self.lock = threading.Lock()
        self._stopping = threading.Event()
        self._stopped = threading.Event()

    def run(self):
        try:
            while not self._stopping.is_set():
                with self.lock:
                    self.server.serve_forever(
                        timeout=self.poll_interval, blocking=False
                    )
        finally:
            self._stopped.set()

    def stop(self):
        self._stopping.set()
        self._stopped.wait()
        self.server.close_all()
        self.join()
        reset_server_opts()
        assert_free_resources(self.parent_pid)
