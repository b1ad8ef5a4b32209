# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

"""
Client-protocol-interpreter (client-PI, see RFC-959).

Commands are queued and sent one at a time: a command is written on
the wire only when the previous exchange is over, meaning its final
reply arrived and, for transfer commands, its data connection was
closed. Replies are therefore matched to commands in FIFO order.

Every command returns a concurrent.futures.Future which:

 - is resolved with the Response for 2xx and 3xx replies.
 - fails with CommandFailed for 4xx and 5xx replies.
 - fails with ConnectionLost if the control connection goes away
   (or the server violates the reply grammar) before the reply.

1xx replies are preliminary: they are recorded on the command and
do not resolve it.

Usage example:

>>> from ftpkit.client import FTPClient
>>> client = FTPClient()
>>> client.run_until_complete(client.connect("127.0.0.1", 2121))
<Response(220, 'ftpkit 0.1.0 ready.')>
>>> client.run_until_complete(client.login("user", "12345"))
<Response(230, 'Login successful.')>
>>> client.run_until_complete(client.stor("notes.txt", b"hello"))
<Response(226, 'Transfer complete.')>
"""

import collections
import socket
import traceback
from concurrent.futures import Future

from ..exceptions import CommandFailed
from ..exceptions import ConnectionLost
from ..exceptions import ProtocolError
from ..ioloop import Connector
from ..ioloop import timer
from ..log import debug
from ..log import logger
from ..protocol import ResponseParser
from ..protocol import format_port
from ..protocol import parse_pasv
from .data import CLOSED
from .data import ESTABLISHED
from .data import DataConnection
from .transfer import TransferSession

__all__ = ["Command", "FTPClient"]

# stages of a transfer command
SETUP = "SETUP"  # PASV or PORT sent
CONNECTING = "CONNECTING"  # connecting to the PASV address
SENT = "SENT"  # the command itself was sent

_transfer_verbs = {
    "RETR": "fetch",
    "STOR": "store",
    "APPE": "store",
    "STOU": "store",
    "LIST": "list",
    "NLST": "list",
}


def _parse_257(resp):
    """Return the unquoted path name of a 257 reply, e.g.
    '"/foo ""bar"" dir" is the current directory.' -> '/foo "bar" dir'.
    """
    text = resp.text
    if not text.startswith('"'):
        return ""
    dirname = []
    i = 1
    while i < len(text):
        c = text[i]
        i += 1
        if c == '"':
            if i >= len(text) or text[i] != '"':
                break
            i += 1
        dirname.append(c)
    return "".join(dirname)


class Command:
    """A control command waiting to be sent or to be answered.

     - (str) verb: the command name (None for the server greeting).
     - (str) arg: the command argument, if any.
     - (instance) future: the Future of the outcome.
     - (instance) session: the TransferSession of transfer commands.
     - (list) preliminary: the 1xx replies received so far.
    """

    def __init__(
        self, verb, arg=None, session=None, followup=None, transform=None
    ):
        self.verb = verb.upper() if verb else verb
        self.arg = arg
        self.session = session
        self.followup = followup
        self.transform = transform
        self.future = session.future if session is not None else Future()
        self.preliminary = []
        self.response = None
        self.error = None
        self.stage = None

    def __repr__(self):
        return "<%s(%s, stage=%s)>" % (
            self.__class__.__name__,
            self.line(masked=True),
            self.stage,
        )

    def line(self, masked=False):
        if self.verb is None:
            return "<greeting>"
        if self.arg is None:
            return self.verb
        if masked and self.verb == "PASS":
            return "PASS ******"
        return f"{self.verb} {self.arg}"


class FTPClient(Connector):
    """Asynchronous FTP client running on an IOLoop.

    All relevant session information is stored in class attributes
    described below.

     - (bool) passive: whether transfers use PASV (True, default) or
       PORT (False).

     - (int) data_timeout: the seconds to wait for a data connection
       to be established (default 30). On expiry the transfer fails
       with DataChannelTimeout.

     - (int) timeout: the seconds to wait for a reply to a command;
       on expiry the control connection is closed and all pending
       commands fail with ConnectionLost. None (default) means no
       timeout.

     - (bool) trust_server_pasv_ipv4_address: when False (default)
       the host part of 227 replies is ignored and the data
       connection goes to the address of the control connection.

     - (str) encoding: the encoding of the control channel
       (default utf8).
    """

    passive = True
    data_timeout = 30
    timeout = None
    trust_server_pasv_ipv4_address = False
    encoding = "utf8"
    unicode_errors = "surrogateescape"
    ac_in_buffer_size = 65536

    def __init__(self, ioloop=None):
        Connector.__init__(self, ioloop=ioloop)
        self.welcome = None
        self._parser = ResponseParser()
        self._queue = collections.deque()
        self._current = None
        self._data = None
        self._greeted = False
        self._idler = None
        self._close_reason = None
        self._in_buffer = []
        self.set_terminator(b"\r\n")

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()

    def get_repr_info(self, as_str=False, extra_info=None):
        info = {}
        info["id"] = id(self)
        info["addr"] = "%s:%s" % self.addr[:2] if self.addr else None
        info["pending"] = len(self._queue) + (self._current is not None)
        if extra_info:
            info.update(extra_info)
        if as_str:
            return ", ".join([f"{k}={v!r}" for (k, v) in info.items()])
        return info

    # --- connection

    def connect(self, host, port=21):
        """Connect to the server. Return the Future of the 220
        greeting, which is handled as the first exchange.
        """
        greeting = Command(None)
        greeting.future.set_running_or_notify_cancel()
        greeting.stage = SENT
        self._current = greeting
        err = "getaddrinfo() returned an empty list"
        try:
            info = socket.getaddrinfo(
                host, port, socket.AF_UNSPEC, socket.SOCK_STREAM
            )
        except socket.gaierror as _:
            info = []
            err = _
        for af, socktype, _proto, _canonname, sa in info:
            try:
                self.create_socket(af, socktype)
                Connector.connect(self, sa)
            except OSError as _:
                err = _
                if self.socket is not None:
                    self.socket.close()
                    self.del_channel()
                    self.socket = None
                continue
            break
        if self.socket is None:
            self._abort(f"can't connect to {host}:{port}: {err}")
        else:
            self._start_idler()
        return greeting.future

    def handle_connect(self):
        debug("call: handle_connect()", inst=self)

    def handle_close(self):
        self._abort("connection closed by server")

    def handle_error(self):
        try:
            raise  # noqa: PLE0704
        except OSError as err:
            reason = str(err)
        except Exception as err:
            logger.error(traceback.format_exc())
            reason = repr(err)
        try:
            self._abort(reason)
        except Exception:
            logger.critical(traceback.format_exc())

    def _abort(self, reason):
        if self._close_reason is None:
            self._close_reason = reason
        self.close()

    def close(self):
        """Close the control connection. Pending commands fail with
        ConnectionLost.
        """
        if not self._closed:
            debug("call: close()", inst=self)
            Connector.close(self)
            if self._idler is not None and not self._idler.cancelled:
                self._idler.cancel()
            if self._data is not None:
                self._data.close()
                self._data = None
            reason = self._close_reason or "connection closed"
            pending = list(self._queue)
            if self._current is not None:
                pending.insert(0, self._current)
            self._current = None
            self._queue.clear()
            for cmd in pending:
                if not cmd.future.done():
                    cmd.future.set_exception(ConnectionLost(reason))

    # --- the command queue

    def enqueue(self, verb, arg=None):
        """Queue a command; return the Future of its reply."""
        if verb.upper() in _transfer_verbs:
            raise ValueError(f"use transfer() for {verb.upper()}")
        return self._submit(Command(verb, arg)).future

    def transfer(self, verb, arg=None, endpoint=None):
        """Queue a transfer command: RETR, LIST and NLST write to
        <endpoint> (a callable or an object with write(); if None
        the data is collected in the session's "received" attribute),
        STOR, APPE and STOU read from it (see as_producer()).
        Return the TransferSession, whose "future" attribute gets
        resolved with the final reply.
        """
        verb = verb.upper()
        if verb not in _transfer_verbs:
            raise ValueError(f"{verb} is not a transfer command")
        session = TransferSession(
            _transfer_verbs[verb], endpoint, encoding=self.encoding
        )
        self._submit(Command(verb, arg, session=session))
        return session

    def _submit(self, cmd):
        if self._closed:
            cmd.future.set_exception(
                ConnectionLost(self._close_reason or "not connected")
            )
            return cmd
        self._queue.append(cmd)
        self._process_queue()
        return cmd

    def _process_queue(self):
        while (
            self._greeted
            and self._current is None
            and self._queue
            and not self._closed
        ):
            cmd = self._queue.popleft()
            fut = cmd.future
            if not fut.running() and not fut.set_running_or_notify_cancel():
                continue
            self._start(cmd)

    def _start(self, cmd):
        self._current = cmd
        if cmd.session is None:
            self._send(cmd)
            return
        cmd.stage = SETUP
        self._data = DataConnection(
            self, cmd.session, passive=self.passive, timeout=self.data_timeout
        )
        if self.passive:
            self._push_line("PASV")
            return
        local_ip = self.socket.getsockname()[0]
        if local_ip.startswith("::ffff:"):
            local_ip = local_ip[7:]
        if ":" in local_ip:
            self._data.close()
            cmd.error = ProtocolError("PORT requires an IPv4 connection")
            self._finish(cmd)
            return
        host, port = self._data.listen(local_ip)
        self._push_line("PORT " + format_port(host, port))

    def _send(self, cmd):
        cmd.stage = SENT
        self._push_line(cmd.line(), masked=cmd.line(masked=True))

    def _push_line(self, line, masked=None):
        logger.debug("-> %s", masked or line)
        self._start_idler()
        self.push((line + "\r\n").encode(self.encoding, self.unicode_errors))

    def _start_idler(self):
        if self._idler is not None and not self._idler.cancelled:
            self._idler.cancel()
        self._idler = None
        if self.timeout:
            self._idler = self.ioloop.call_later(
                self.timeout, self.handle_timeout, _errback=self.handle_error
            )

    def handle_timeout(self):
        """Called when the server does not reply within <timeout>."""
        if self._current is not None:
            self._abort(
                f"no reply to {self._current.line(masked=True)!r} within "
                f"{self.timeout} seconds"
            )

    # --- incoming replies

    def collect_incoming_data(self, data):
        self._in_buffer.append(data)

    def found_terminator(self):
        line = b"".join(self._in_buffer)
        self._in_buffer = []
        line = line.decode(self.encoding, self.unicode_errors)
        try:
            resp = self._parser.feed(line)
        except ProtocolError as err:
            logger.debug("<- %s", line)
            self._abort(str(err))
            return
        if resp is not None:
            logger.debug("<- %s", resp)
            self._handle_response(resp)

    def _handle_response(self, resp):
        cmd = self._current
        if cmd is None:
            self._abort(f"unexpected reply {str(resp)!r}")
            return
        if self._idler is not None and not self._idler.cancelled:
            self._idler.cancel()
        if resp.is_preliminary():
            cmd.preliminary.append(resp)
            if cmd.session is not None:
                cmd.session.preliminary.append(resp)
                self._maybe_start_store(cmd)
            if self.timeout:
                self._start_idler()
            return
        if cmd.stage == SETUP:
            self._on_setup_response(cmd, resp)
            return
        cmd.response = resp
        if cmd.session is None:
            self._finish(cmd)
        else:
            self._maybe_finish(cmd)

    def _on_setup_response(self, cmd, resp):
        """The reply to PASV or PORT."""
        if cmd.error is not None:
            # the data connection already failed
            self._finish(cmd)
        elif resp.is_failure():
            self._data.close()
            cmd.error = CommandFailed(resp)
            self._finish(cmd)
        elif self._data.mode == "active":
            self._send(cmd)
        else:
            try:
                host, port = parse_pasv(resp.text)
            except ProtocolError as err:
                self._data.close()
                cmd.error = err
                self._finish(cmd)
                return
            if not self.trust_server_pasv_ipv4_address:
                host = self.socket.getpeername()[0]
            cmd.stage = CONNECTING
            self._data.connect(host, port)

    def _maybe_start_store(self, cmd):
        data = self._data
        if (
            cmd.session.direction == "store"
            and cmd.preliminary
            and data is not None
            and data.state == ESTABLISHED
        ):
            data.start_store()

    def _maybe_finish(self, cmd):
        """A transfer exchange is over once the final reply arrived
        and the data connection is closed.
        """
        if cmd.response is None:
            return
        data = self._data
        if data is not None and data.state != CLOSED:
            if not cmd.response.is_failure():
                return
            data.close()
        if data is not None and data.error is not None and cmd.error is None:
            cmd.error = data.error
        self._finish(cmd)

    def _finish(self, cmd):
        self._current = None
        self._data = None
        resp = cmd.response
        if not cmd.future.done():
            self._resolve(cmd, resp)
        if cmd.verb is None:
            # the greeting
            if resp is None or resp.is_failure():
                self._abort(f"server refused the connection: {resp}")
            else:
                self.welcome = resp
                self._greeted = True
        elif cmd.verb == "QUIT" and resp is not None and resp.is_success():
            self._close_reason = "connection closed by QUIT"
            self.close()
        self._process_queue()

    def _resolve(self, cmd, resp):
        fut = cmd.future
        if cmd.error is not None:
            fut.set_exception(cmd.error)
            return
        if resp.is_failure():
            fut.set_exception(CommandFailed(resp))
            return
        if cmd.followup is not None:
            nxt = cmd.followup(resp)
            if nxt is not None:
                # the next command of the chain resolves the Future
                nxt.future = fut
                self._queue.appendleft(nxt)
                return
        if cmd.transform is None:
            fut.set_result(resp)
            return
        try:
            result = cmd.transform(resp)
        except Exception as err:
            fut.set_exception(err)
        else:
            fut.set_result(result)

    # --- data connection callbacks

    def _on_data_established(self, data):
        cmd = self._current
        if cmd is None or data is not self._data:
            return
        if cmd.stage == CONNECTING:
            self._send(cmd)
        self._maybe_start_store(cmd)

    def _on_data_failed(self, data, err):
        cmd = self._current
        if cmd is None or data is not self._data:
            return
        cmd.error = err
        if not cmd.future.done():
            cmd.future.set_exception(err)
        if cmd.stage == CONNECTING or cmd.response is not None:
            self._finish(cmd)
        # else a reply is still expected: the exchange ends (and the
        # reply is discarded) once it arrives

    def _on_data_closed(self, data):
        cmd = self._current
        if cmd is None or data is not self._data:
            return
        self._maybe_finish(cmd)

    # --- event loop

    def run_until_complete(self, future, timeout=None):
        """Run the IOLoop until <future> is done and return its result
        (or raise its exception). Raise TimeoutError if it is not done
        within <timeout> seconds.
        """
        deadline = None if timeout is None else timer() + timeout
        ioloop = self.ioloop
        while not future.done():
            if not ioloop.socket_map and not ioloop.sched._tasks:
                raise ConnectionLost("nothing left to run on the IO loop")
            poll_timeout = 0.1
            if deadline is not None:
                remaining = deadline - timer()
                if remaining <= 0:
                    raise TimeoutError(f"{future!r} not done in {timeout}s")
                poll_timeout = min(poll_timeout, remaining)
            ioloop.loop(timeout=poll_timeout, blocking=False)
        return future.result()

    # --- convenience methods

    def login(self, user="anonymous", passwd=""):
        """Send USER and, if asked (331), PASS."""

        def followup(resp):
            if resp.code == 331:
                return Command("PASS", passwd)
            return None

        cmd = Command("USER", user, followup=followup)
        return self._submit(cmd).future

    def cwd(self, path):
        return self.enqueue("CWD", path)

    def cdup(self):
        return self.enqueue("CDUP")

    def pwd(self):
        """Return a Future resolved with the current directory name."""
        return self._submit(Command("PWD", transform=_parse_257)).future

    def size(self, path):
        """Return a Future resolved with the size of <path> as int."""
        cmd = Command("SIZE", path, transform=lambda r: int(r.text.strip()))
        return self._submit(cmd).future

    def mkd(self, path):
        return self.enqueue("MKD", path)

    def rmd(self, path):
        return self.enqueue("RMD", path)

    def delete(self, path):
        return self.enqueue("DELE", path)

    def rename(self, src, dst):
        """Send RNFR and, if accepted (350), RNTO."""

        def followup(resp):
            if resp.code == 350:
                return Command("RNTO", dst)
            return None

        return self._submit(Command("RNFR", src, followup=followup)).future

    def stat(self, path=None):
        return self.enqueue("STAT", path)

    def type(self, type_code):
        return self.enqueue("TYPE", type_code)

    def noop(self):
        return self.enqueue("NOOP")

    def quit(self):
        """Send QUIT; the connection is closed once the server
        replies.
        """
        return self.enqueue("QUIT")

    def retr(self, path, sink=None):
        return self.transfer("RETR", path, sink).future

    def stor(self, path, source):
        return self.transfer("STOR", path, source).future

    def appe(self, path, source):
        return self.transfer("APPE", path, source).future

    def stou(self, source):
        return self.transfer("STOU", None, source).future

    def list(self, path=None, sink=None):
        return self.transfer("LIST", path, sink).future

    def nlst(self, path=None, sink=None):
        return self.transfer("NLST", path, sink).future
