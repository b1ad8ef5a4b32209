# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

import asynchat
import collections
import errno
import logging
import socket
import traceback

from .. import __ver__
from ..authorizers import AuthorizerError
from ..authorizers import DummyAuthorizer
from ..exceptions import AlreadyExists
from ..exceptions import AuthenticationFailed
from ..exceptions import BadSequence
from ..exceptions import FilesystemError
from ..filesystems import Directory
from ..filesystems import MemoryFS
from ..filesystems import resolve
from ..ioloop import AsyncChat
from ..log import debug
from ..log import logger
from ..protocol import format_response
from ..protocol import parse_port
from .data import DTPHandler
from .dispatchers import ActiveDTP
from .dispatchers import PassiveDTP
from .producers import BufferedIteratorProducer
from .producers import FileProducer

__all__ = [
    "AuthCapability",
    "Capability",
    "FTPHandler",
    "TransferPrepCapability",
    "TypeCapability",
    "proto_cmds",
]


# Per-verb metadata:
#  - auth: whether the user must be logged in
#  - arg: True (argument required), False (no argument allowed) or
#    None (argument optional)
proto_cmds = {
    "APPE": dict(auth=True, arg=True),
    "CDUP": dict(auth=True, arg=False),
    "CWD": dict(auth=True, arg=None),
    "DELE": dict(auth=True, arg=True),
    "LIST": dict(auth=True, arg=None),
    "MKD": dict(auth=True, arg=True),
    "NLST": dict(auth=True, arg=None),
    "NOOP": dict(auth=False, arg=False),
    "PASS": dict(auth=False, arg=None),
    "PASV": dict(auth=True, arg=False),
    "PORT": dict(auth=True, arg=True),
    "PWD": dict(auth=True, arg=False),
    "QUIT": dict(auth=False, arg=False),
    "RETR": dict(auth=True, arg=True),
    "RMD": dict(auth=True, arg=True),
    "RNFR": dict(auth=True, arg=True),
    "RNTO": dict(auth=True, arg=True),
    "SIZE": dict(auth=True, arg=True),
    "STAT": dict(auth=False, arg=None),
    "STOR": dict(auth=True, arg=True),
    "STOU": dict(auth=True, arg=None),
    "SYST": dict(auth=False, arg=False),
    "TYPE": dict(auth=True, arg=True),
    "USER": dict(auth=False, arg=True),
}


def _quote(path):
    # RFC-959: a double quote in a pathname is escaped by doubling it
    return '"%s"' % path.replace('"', '""')


# ===================================================================
# --- capabilities
# ===================================================================


class Capability:
    """Base class for the mixins contributing commands to the
    verb -> method table FTPHandler builds when a session starts.
    Every subclass extends the table returned by super().
    """

    def command_table(self):
        return {}


class AuthCapability(Capability):
    """USER / PASS: moves the session from the unauthenticated to the
    authenticated state by asking the authorizer.
    """

    # maximum login attempts
    max_login_attempts = 3

    def command_table(self):
        table = super().command_table()
        table["USER"] = self.ftp_USER
        table["PASS"] = self.ftp_PASS
        return table

    def ftp_USER(self, line):
        """Set the username for the current session."""
        # RFC-959 specifies a 530 response to the USER command if the
        # username is not valid. If the username is valid is required
        # ftpd returns a 331 response instead. In order to prevent a
        # malicious client from determining valid usernames on a server,
        # it is suggested by RFC-2577 that a server always return 331 to
        # the USER command and then reject the combination of username
        # and password for an invalid username when PASS is provided
        # later.
        if self.authenticated:
            self.flush_account()
        self.username = line
        auth = self.authorizer
        if auth.has_user(line) and not auth.requires_password(line):
            self._login(line, "")
            return
        self.respond("331 Username ok, send password.")

    def ftp_PASS(self, line):
        """Check username's password against the authorizer."""
        if self.authenticated:
            self.respond("503 User already authenticated.")
            return
        if not self.username:
            self.respond("503 Login with USER first.")
            return
        self._login(self.username, line)

    def _login(self, username, password):
        try:
            self.authorizer.validate_authentication(username, password, self)
            home = self.authorizer.get_home_dir(username)
            msg_login = self.authorizer.get_msg_login(username)
        except (AuthenticationFailed, AuthorizerError) as err:
            self.handle_auth_failed(str(err))
        else:
            self.handle_auth_success(home, password, msg_login)

    def handle_auth_failed(self, msg):
        self.attempted_logins += 1
        if self.attempted_logins >= self.max_login_attempts:
            self.respond(
                "530 Maximum login attempts. Disconnecting.",
                logfun=logger.info,
            )
            self.close_when_done()
        else:
            self.respond("530 " + msg, logfun=logger.info)
        self.log(f"USER '{self.username}' failed login.")
        self.username = ""

    def handle_auth_success(self, home, password, msg_login):
        self.send_response(230, msg_login)
        self.log(f"USER '{self.username}' logged in.")
        self.authenticated = True
        self.password = password
        self.attempted_logins = 0
        self.fs = self.abstracted_fs(self.store, self, home)


class TypeCapability(Capability):
    """TYPE: the transfer type is recorded only; bytes always flow
    through the data channel unaltered.
    """

    current_type = "a"

    def command_table(self):
        table = super().command_table()
        table["TYPE"] = self.ftp_TYPE
        return table

    def ftp_TYPE(self, line):
        """Set current type data type to binary/ascii."""
        type = line.upper().replace(" ", "")
        if type in {"A", "L7"}:
            self.respond("200 Type set to: ASCII.")
            self.current_type = "a"
        elif type in {"I", "L8"}:
            self.respond("200 Type set to: Binary.")
            self.current_type = "i"
        else:
            self.respond(f'504 Unsupported type "{line}".')


class TransferPrepCapability(Capability):
    """Pre-conditions checked before a transfer command is served."""

    def pre_transfer(self, cmd):
        """Return True if a transfer for cmd can start, else respond
        to the client and return False.
        """
        if not self._has_data_connection():
            self.respond("425 Use PASV or PORT first.")
            return False
        return True


# ===================================================================
# --- handler
# ===================================================================


class FTPHandler(
    AuthCapability, TypeCapability, TransferPrepCapability, AsyncChat
):
    """Implements the FTP server Protocol Interpreter (see RFC-959),
    handling commands received from the client on the control channel
    against a MemoryStore shared by all sessions.

    All relevant session information is stored in class attributes
    reproduced below and can be modified before instantiating this
    class.

     - (int) timeout:
       The timeout which is the maximum time a remote client may spend
       between FTP commands. If the timeout triggers, the remote client
       will be kicked off.  Defaults to 300 seconds.

     - (str) banner: the string sent when client connects.

     - (int) max_login_attempts:
        the maximum number of wrong authentications before disconnecting
        the client (default 3).

     - (int) max_pending_lines:
        the maximum number of commands held back while a transfer is in
        progress; one more and the client is disconnected with a 421
        reply (default 100).

     - (bool)permit_foreign_addresses:
        FTP site-to-site transfer feature: also referenced as "FXP" it
        permits for transferring a file between two remote FTP servers
        without the transfer going through the client's host (not
        recommended for security reasons as described in RFC-2577).
        Having this attribute set to False means that all data
        connections from/to remote IP addresses which do not match the
        client's IP address will be dropped (defualt False).

     - (bool) permit_privileged_ports:
        set to True if you want to permit active data connections (PORT)
        over privileged ports (not recommended, defaulting to False).

     - (str) masquerade_address:
        the "masqueraded" IP address to provide along PASV reply when
        ftpkit is running behind a NAT or other types of gateways.
        When configured ftpkit will hide its local address and instead
        use the public address of your NAT (default None).

     - (list) passive_ports:
        what ports the ftpd will use for its passive data transfers.
        Value expected is a list of integers (e.g. range(60000, 65535)).
        When configured ftpkit will no longer use kernel-assigned random
        ports (default None).

     - (str) encoding: the encoding used for client / server
       communication (default utf8).

    All relevant instance attributes initialized when client connects
    are reproduced below.  You may be interested in them in case you
    want to subclass the original FTPHandler.

     - (bool) authenticated: True if client authenticated himself.
     - (str) username: the name of the connected user (if any).
     - (int) attempted_logins: number of currently attempted logins.
     - (str) current_type: the current transfer type (default "a")
     - (instance) data_channel: the data channel instance (if any).
     - (instance) fs: the MemoryFS view of the session (after login).
     - (instance) server: the FTPServer class instance.
    """

    # these are overridable defaults

    # default classes
    store = None
    authorizer = DummyAuthorizer()
    active_dtp = ActiveDTP
    passive_dtp = PassiveDTP
    dtp_handler = DTPHandler
    abstracted_fs = MemoryFS

    # session attributes (explained in the docstring)
    timeout = 300
    max_pending_lines = 100
    banner = f"ftpkit {__ver__} ready."
    permit_foreign_addresses = False
    permit_privileged_ports = False
    masquerade_address = None
    passive_ports = None
    encoding = "utf8"
    unicode_errors = "replace"
    log_prefix = "%(remote_ip)s:%(remote_port)s-[%(username)s]"

    # commands worth logging at INFO level
    log_cmds_list = [
        "DELE",
        "RNFR",
        "RNTO",
        "MKD",
        "RMD",
        "CWD",
        "RETR",
        "STOR",
        "APPE",
        "STOU",
    ]

    def __init__(self, conn, server, ioloop=None):
        """Initialize the command channel.

        - (instance) conn: the socket object instance of the newly
           established connection.
        - (instance) server: the ftp server class instance.
        """
        # public session attributes
        self.server = server
        if getattr(server, "store", None) is not None:
            # the tree of the server which accepted us, not the one
            # of the last server built with this handler class
            self.store = server.store
        self.fs = None
        self.authenticated = False
        self.username = ""
        self.password = ""
        self.attempted_logins = 0
        self.data_channel = None
        self.remote_ip = ""
        self.remote_port = ""

        # private session attributes
        self._rnfr = None
        self._idler = None
        self._in_buffer = []
        self._in_buffer_len = 0
        self._pending_lines = collections.deque()
        self._queued_transfer = None
        self._dtp_acceptor = None
        self._dtp_connector = None
        self._command_table = self.command_table()

        try:
            AsyncChat.__init__(self, conn, ioloop=ioloop)
        except OSError as err:
            # if we get an exception here we want the dispatcher
            # instance to set socket attribute before closing
            AsyncChat.__init__(self, socket.socket(), ioloop=ioloop)
            self.close()
            debug(
                "call: FTPHandler.__init__, err on AsyncChat.__init__ "
                f"{err!r}",
                self,
            )
            if err.errno == errno.EINVAL:
                # the peer closed the socket before we got to it
                return
            self.handle_error()
            return
        self.set_terminator(b"\r\n")

        try:
            self.remote_ip, self.remote_port = self.socket.getpeername()[:2]
        except OSError as err:
            debug(
                f"call: FTPHandler.__init__, err on getpeername() {err!r}",
                self,
            )
            # the peer may be gone before getpeername(): ENOTCONN, or
            # EINVAL on macOS
            self.connected = False
            if err.errno in {errno.ENOTCONN, errno.EINVAL}:
                self.close()
            else:
                self.handle_error()
            return
        self.log("FTP session opened (connect)")

    def command_table(self):
        table = super().command_table()
        for cmd in (
            "APPE",
            "CDUP",
            "CWD",
            "DELE",
            "LIST",
            "MKD",
            "NLST",
            "NOOP",
            "PASV",
            "PORT",
            "PWD",
            "QUIT",
            "RETR",
            "RMD",
            "RNFR",
            "RNTO",
            "SIZE",
            "STAT",
            "STOR",
            "STOU",
            "SYST",
        ):
            table[cmd] = getattr(self, "ftp_" + cmd)
        return table

    def get_repr_info(self, as_str=False, extra_info=None):
        info = {}
        info["id"] = id(self)
        info["addr"] = f"{self.remote_ip}:{self.remote_port}"
        if self.username:
            info["user"] = self.username
        dc = getattr(self, "data_channel", None)
        if dc is not None and dc.file_obj is not None:
            if dc.receive:
                info["receiving-file"] = dc.file_obj.name
            else:
                info["sending-file"] = dc.file_obj.name
            info["bytes-trans"] = dc.get_transmitted_bytes()
        if extra_info:
            info.update(extra_info)
        if as_str:
            return ", ".join([f"{k}={v!r}" for (k, v) in info.items()])
        return info

    def handle(self):
        """Return a 220 'ready' response to the client over the command
        channel.
        """
        self.on_connect()
        self.send_response(220, self.banner)
        self._start_idler()

    def handle_max_cons(self):
        """Called when limit for maximum number of connections is reached."""
        msg = "421 Too many connections. Service temporarily unavailable."
        self.respond_w_warning(msg)
        # If self.push is used, data could not be sent immediately in
        # which case a new "loop" will occur exposing us to the risk of
        # accepting new connections. Since this could cause asyncore to
        # run out of fds in case we're using select() on Windows we
        # immediately close the channel by using close() instead of
        # close_when_done(). If data has not been sent yet client will
        # be silently disconnected.
        self.close()

    def handle_max_cons_per_ip(self):
        """Called when too many clients are connected from the same IP."""
        msg = "421 Too many connections from the same IP address."
        self.respond_w_warning(msg)
        self.close_when_done()

    def handle_timeout(self):
        """Called when client does not send any command within the time
        specified in <timeout> attribute."""
        msg = "Control connection timed out."
        self.respond("421 " + msg, logfun=logger.info)
        self.close_when_done()

    def _start_idler(self):
        if self._idler is not None and not self._idler.cancelled:
            self._idler.cancel()
        self._idler = None
        if self.timeout:
            self._idler = self.ioloop.call_later(
                self.timeout, self.handle_timeout, _errback=self.handle_error
            )

    # --- asyncore / asynchat overridden methods

    def readable(self):
        # In contrast to DTPHandler, here we are not interested in
        # receiving any further data from a closed socket.
        return self.connected and AsyncChat.readable(self)

    def writable(self):
        return self.connected and AsyncChat.writable(self)

    def collect_incoming_data(self, data):
        """Read incoming data and append to the input buffer."""
        self._in_buffer.append(data)
        self._in_buffer_len += len(data)
        # Flush buffer if it gets too long (possible DoS attacks).
        # RFC-959 specifies that a 500 response could be given in
        # such cases
        buflimit = 2048
        if self._in_buffer_len > buflimit:
            self.respond_w_warning("500 Command too long.")
            self._in_buffer = []
            self._in_buffer_len = 0

    def decode(self, bytes):
        return bytes.decode(self.encoding, self.unicode_errors)

    def found_terminator(self):
        r"""Called when the incoming data stream matches the \r\n
        terminator.
        """
        if self._idler is not None and not self._idler.cancelled:
            self._idler.reset()

        line = b"".join(self._in_buffer)
        self._in_buffer = []
        self._in_buffer_len = 0
        line = self.decode(line).strip()

        if self._transfer_in_progress():
            if self._closing:
                return
            if len(self._pending_lines) >= self.max_pending_lines:
                self._pending_lines.clear()
                self.respond_w_warning(
                    "421 Too many commands received during the transfer. "
                    "Disconnecting."
                )
                self.close_when_done()
                return
            # serve it once the data channel is closed
            self._pending_lines.append(line)
            return
        self.pre_process_command(line)

    def pre_process_command(self, line):
        cmd = line.split(" ")[0].upper()
        arg = line[len(cmd) + 1 :]
        if cmd == "PASS":
            self.logline("<- PASS ******")
        else:
            self.logline("<- " + line)

        # any command other than RNTO makes a pending RNFR stale
        if cmd != "RNTO":
            self._rnfr = None

        if cmd not in self._command_table or cmd not in proto_cmds:
            msg = f'Command "{cmd}" not understood.'
            self.respond("500 " + msg)
            if cmd:
                self.log_cmd(cmd, arg, 500, msg)
            return

        if not arg and proto_cmds[cmd]["arg"] is True:
            msg = "Syntax error: command needs an argument."
            self.respond("501 " + msg)
            self.log_cmd(cmd, "", 501, msg)
            return
        if arg and proto_cmds[cmd]["arg"] is False:
            msg = "Syntax error: command does not accept arguments."
            self.respond("501 " + msg)
            self.log_cmd(cmd, arg, 501, msg)
            return

        if not self.authenticated:
            # STAT is permitted before login but without an argument
            # it must not become a way to list the filesystem
            if proto_cmds[cmd]["auth"] or (cmd == "STAT" and arg):
                msg = "Log in with USER and PASS first."
                self.respond("530 " + msg)
                self.log_cmd(cmd, arg, 530, msg)
                return

        self.process_command(cmd, arg)

    def process_command(self, cmd, *args, **kwargs):
        """Process command by calling the corresponding ftp_* method.
        Filesystem errors are turned into replies here: 503 for
        BadSequence, 550 for FilesystemError.
        """
        method = self._command_table[cmd]
        try:
            method(*args, **kwargs)
        except BadSequence as err:
            msg = f"{err}."
            self.respond("503 " + msg)
            self.log_cmd(cmd, args[0] if args else "", 503, msg)
        except FilesystemError as err:
            msg = f"{err}."
            self.respond("550 " + msg)
            self.log_cmd(cmd, args[0] if args else "", 550, msg)

    def handle_error(self):
        try:
            self.log_exception(self)
            self.close()
        except Exception:
            logger.critical(traceback.format_exc())

    def handle_close(self):
        self.close()

    def close(self):
        """Close the current channel disconnecting the client."""
        debug("call: close()", inst=self)
        if not self._closed:
            AsyncChat.close(self)

            self._shutdown_connecting_dtp()

            if self.data_channel is not None:
                self.data_channel.close()
                self.data_channel = None

            self._discard_queued_transfer()
            self._pending_lines.clear()

            if self._idler is not None and not self._idler.cancelled:
                self._idler.cancel()

            # remove client IP address from ip map
            if self.remote_ip in self.server.ip_map:
                self.server.ip_map.remove(self.remote_ip)

            if self.fs is not None:
                self.fs.cmd_channel = None
                self.fs = None
            if self.remote_ip:
                self.log("FTP session closed (disconnect).")

    # --- callbacks

    def on_connect(self):
        """Called when client connects, *before* sending the initial
        220 reply.
        """

    def _has_data_connection(self):
        """Whether a data connection is established or being set up
        as the result of a previous PASV or PORT.
        """
        if self.data_channel is not None:
            return True
        for dtp in (self._dtp_acceptor, self._dtp_connector):
            if dtp is not None and not dtp._closed:
                return True
        return False

    def _transfer_in_progress(self):
        if self._queued_transfer is not None:
            return True
        dc = self.data_channel
        return dc is not None and dc.started

    def _on_dtp_connection(self):
        """Called by PassiveDTP / ActiveDTP once the data channel is
        up. Starts the transfer queued by a previous RETR/STOR/LIST
        (if any); otherwise the channel waits for one.
        """
        # only the acceptor is closed: ActiveDTP handed its socket over
        if self._dtp_acceptor is not None:
            self._dtp_acceptor.close()
            self._dtp_acceptor = None
        self._dtp_connector = None

        # no idle kick while a transfer is in progress
        if self._idler is not None and not self._idler.cancelled:
            self._idler.cancel()

        if self._queued_transfer is not None:
            cmd, file, producer = self._queued_transfer
            self._queued_transfer = None
            self.data_channel.start_transfer(cmd, file, producer)

    def _on_dtp_close(self):
        """Called every time the data channel is closed."""
        self.data_channel = None
        if self._closed:
            return
        # data transfer finished, restart the idle timer
        self._start_idler()
        self._process_pending_lines()

    def _on_dtp_failure(self):
        """Called when the data connection could not be established
        (a reply was already sent by the dispatcher).
        """
        if self._closed:
            return
        self._discard_queued_transfer()
        self._start_idler()
        self._process_pending_lines()

    def _process_pending_lines(self):
        while (
            self._pending_lines
            and self.connected
            and not self._transfer_in_progress()
        ):
            self.pre_process_command(self._pending_lines.popleft())

    def _discard_queued_transfer(self):
        queued, self._queued_transfer = self._queued_transfer, None
        if queued is None:
            return
        file = queued[1]
        if file is not None:
            # no byte was transferred: nothing to store
            file.close()

    # --- utility

    def push(self, s):
        asynchat.async_chat.push(self, s.encode(self.encoding))

    def send_response(self, code, text="", logfun=logger.debug):
        """Send a reply to the client using the command channel; a
        multi-line text is framed as a multi-line reply.
        """
        data = format_response(code, text)
        for line in data.splitlines():
            self.logline("-> " + line, logfun=logfun)
        self.push(data)

    def respond(self, resp, logfun=logger.debug):
        """Send a "CODE text" reply to the client."""
        self.send_response(resp[:3], resp[4:], logfun=logfun)

    def respond_w_warning(self, resp):
        self.respond(resp, logfun=logger.warning)

    def push_dtp_data(self, producer, cmd, file=None):
        """Used by RETR, LIST and NLST: send the output of *producer*
        over the data channel, right away if it is connected or as
        soon as it gets connected.

         - (obj) producer: an asynchat producer (see producers.py).
         - (str) cmd: the verb, for logging.
         - (file) file: the file[-like] object being sent (if any).
        """
        self._queue_transfer(cmd, file, producer)

    def receive_dtp_data(self, file, cmd, resp=None):
        """Used by STOR, APPE and STOU: write whatever the client sends
        over the data channel into *file*. *resp* overrides the
        preliminary reply (STOU announces the file name).
        """
        self._queue_transfer(cmd, file, None, resp)

    def _queue_transfer(self, cmd, file, producer, resp=None):
        if self.data_channel is not None:
            self.respond(
                resp
                or "125 Data connection already open. Transfer starting."
            )
            self.data_channel.start_transfer(cmd, file, producer)
        else:
            self.respond(
                resp
                or "150 File status okay. About to open data connection."
            )
            self._queued_transfer = (cmd, file, producer)

    def flush_account(self):
        """Flush account information by clearing attributes that need
        to be reset on a USER command.
        """
        self._shutdown_connecting_dtp()
        if self.data_channel is not None:
            self.data_channel.close()
            self.data_channel = None
        self._rnfr = None
        self.fs = None
        self.authenticated = False
        self.username = ""
        self.password = ""
        self.attempted_logins = 0

    def _shutdown_connecting_dtp(self):
        """Close any ActiveDTP or PassiveDTP instance waiting to
        establish a connection (passive or active).
        """
        if self._dtp_acceptor is not None:
            self._dtp_acceptor.close()
            self._dtp_acceptor = None
        if self._dtp_connector is not None:
            self._dtp_connector.close()
            self._dtp_connector = None

    # --- logging wrappers

    def log(self, msg, logfun=logger.info):
        """Log a message, including additional identifying session data."""
        prefix = self.log_prefix % self.__dict__
        logfun(f"{prefix} {msg}")

    def logline(self, msg, logfun=logger.debug):
        """Log a line including additional identifying session data.
        By default this is disabled unless logging level == DEBUG.
        """
        if logger.isEnabledFor(logging.DEBUG):
            prefix = self.log_prefix % self.__dict__
            logfun(f"{prefix} {msg}")

    def log_exception(self, instance):
        """Log an unhandled exception. 'instance' is the instance
        where the exception was generated.
        """
        logger.exception("unhandled exception in instance %r", instance)

    def log_cmd(self, cmd, arg, respcode, respstr):
        """Log commands and responses in a standardized format.
        This is disabled in case the logging level is set to DEBUG.

         - (str) cmd:
            the command sent by client

         - (str) arg:
            the command argument sent by client.
            For filesystem commands such as DELE, MKD, etc. this is
            already represented as an absolute real filesystem path
            like "/home/user/file.ext".

         - (int) respcode:
            the response code as being sent by server. Response codes
            starting with 4xx or 5xx are returned if the command has
            been rejected for some reason.

         - (str) respstr:
            the response string as being sent by server.
        """
        if not logger.isEnabledFor(logging.DEBUG) and cmd in (
            self.log_cmds_list
        ):
            line = f"{' '.join([cmd, arg]).strip()} {respcode}"
            if str(respcode)[0] in "45":
                line += f" {respstr!r}"
            self.log(line)

    def log_transfer(self, cmd, filename, receive, completed, elapsed, bytes):
        """Log all file transfers in a standardized format.

         - (str) cmd:
            the original command who caused the transfer.

         - (str) filename:
            the absolutized name of the file on disk.

         - (bool) receive:
            True if the transfer was used for client uploading (STOR,
            STOU, APPE), False otherwise (RETR).

         - (bool) completed:
            True if the file has been entirely sent, else False.

         - (float) elapsed:
            transfer elapsed time in seconds.

         - (int) bytes:
            number of bytes transmitted.
        """
        line = "%s %s completed=%s bytes=%s seconds=%s" % (
            cmd,
            filename,
            completed and 1 or 0,
            bytes,
            elapsed,
        )
        self.log(line)

    # --- connection

    def ftp_PORT(self, line):
        """Start an active data channel by using IPv4."""
        try:
            ip, port = parse_port(line)
        except (ValueError, OverflowError):
            self.respond("501 Invalid PORT format.")
            return

        remote_ip = self.remote_ip
        if remote_ip.startswith("::ffff:"):
            remote_ip = remote_ip[7:]
        # FTP bounce attacks protection: according to RFC-2577 it's
        # recommended to reject PORT if IP address specified in it
        # does not match client IP address.
        if ip != remote_ip and not self.permit_foreign_addresses:
            msg = (
                "501 Rejected data connection to foreign address "
                f"{ip}:{port}."
            )
            self.respond_w_warning(msg)
            return

        # ...another RFC-2577 recommendation is rejecting connections
        # to privileged ports (< 1024) for security reasons.
        if not self.permit_privileged_ports and port < 1024:
            msg = f"501 PORT against the privileged port {port} refused."
            self.respond_w_warning(msg)
            return

        # close establishing DTP instances, if any
        self._shutdown_connecting_dtp()

        if self.data_channel is not None:
            self.data_channel.close()
            self.data_channel = None

        # make sure we are not hitting the max connections limit
        if not self.server._accept_new_cons():
            msg = "425 Too many connections. Can't open data channel."
            self.respond_w_warning(msg)
            return

        # open data channel
        self._dtp_connector = self.active_dtp(ip, port, self)

    def ftp_PASV(self, line):
        """Start a passive data channel by using IPv4."""
        # close establishing DTP instances, if any
        self._shutdown_connecting_dtp()

        # close established data connections, if any
        if self.data_channel is not None:
            self.data_channel.close()
            self.data_channel = None

        # make sure we are not hitting the max connections limit
        if not self.server._accept_new_cons():
            msg = "425 Too many connections. Can't open data channel."
            self.respond_w_warning(msg)
            return

        # open data channel
        self._dtp_acceptor = self.passive_dtp(self)

    def ftp_QUIT(self, line):
        """Quit the current session disconnecting the client."""
        if self.authenticated:
            msg_quit = self.authorizer.get_msg_quit(self.username)
        else:
            msg_quit = "Goodbye."
        self.send_response(221, msg_quit)
        self.close_when_done()

    # --- data transferring

    def ftp_LIST(self, path):
        """Return a list of files in the specified directory to the
        client.
        """
        # - If no argument, fall back on cwd as default.
        # - Some older FTP clients erroneously issue /bin/ls-like LIST
        #   formats in which case we fall back on cwd as default.
        if not self.pre_transfer("LIST"):
            return
        if path.lower() in {"-a", "-l", "-al", "-la"}:
            path = ""
        path = self.fs.ftpnorm(path)
        if self.fs.isdir(path):
            listing = self.fs.listdir(path)
            iterator = self.fs.format_list(path, listing)
        elif self.fs.isfile(path):
            # if path is a file we just list its name
            basedir = resolve(path, "..")
            filename = path.rsplit("/", 1)[1]
            iterator = self.fs.format_list(basedir, [filename])
        else:
            raise FilesystemError("No such file or directory")
        producer = BufferedIteratorProducer(iterator)
        self.push_dtp_data(producer, "LIST")
        return path

    def ftp_NLST(self, path):
        """Return a list of files in the specified directory in a
        compact form to the client.
        """
        if not self.pre_transfer("NLST"):
            return
        path = self.fs.ftpnorm(path)
        if self.fs.isdir(path):
            listing = self.fs.listdir(path)
        elif self.fs.isfile(path):
            listing = [path.rsplit("/", 1)[1]]
        else:
            raise FilesystemError("No such file or directory")
        producer = BufferedIteratorProducer(self.fs.format_nlst(listing))
        self.push_dtp_data(producer, "NLST")
        return path

    def ftp_RETR(self, file):
        """Retrieve the specified file (transfer from the server to the
        client).
        """
        if not self.pre_transfer("RETR"):
            return
        file = self.fs.ftpnorm(file)
        fd = self.fs.open(file, "rb")
        producer = FileProducer(fd)
        self.push_dtp_data(producer, "RETR", file=fd)
        return file

    def ftp_STOR(self, file, mode="w"):
        """Store a file (transfer from the client to the server)."""
        # A resume could occur in case of APPE command in which case
        # the data is added at the end of the file.
        cmd = "APPE" if "a" in mode else "STOR"
        if not self.pre_transfer(cmd):
            return
        file = self.fs.ftpnorm(file)
        fd = self.fs.open(file, mode + "b")
        self.receive_dtp_data(fd, cmd)
        return file

    def ftp_STOU(self, line):
        """Store a file on the server with a unique name."""
        # Note 1: RFC-959 prohibited STOU parameters, but this
        # prohibition is obsolete.
        # Note 2: 250 response wanted by RFC-959 has been declared
        # incorrect in RFC-1123 that wants 125/150 instead.
        # Note 3: RFC-1123 also provided an exact output format
        # defined to be as follow:
        # > 125 FILE: pppp
        # ...where pppp represents the unique path name of the
        # file that will be written.
        if not self.pre_transfer("STOU"):
            return
        if line:
            basedir = resolve(self.fs.ftpnorm(line), "..")
            prefix = self.fs.ftpnorm(line).rsplit("/", 1)[1] + "."
        else:
            basedir = self.fs.cwd
            prefix = "ftpd."
        fd = self.fs.mkstemp(basedir, prefix=prefix)
        filename = fd.name.rsplit("/", 1)[1]
        if self.data_channel is not None:
            resp = f"125 FILE: {filename}"
        else:
            resp = f"150 FILE: {filename}"
        self.receive_dtp_data(fd, "STOU", resp=resp)
        return fd.name

    def ftp_APPE(self, file):
        """Append data to an existing file on the server."""
        return self.ftp_STOR(file, mode="a")

    # --- filesystem operations

    def ftp_PWD(self, line):
        """Return the name of the current working directory to the
        client.
        """
        self.respond(f"257 {_quote(self.fs.cwd)} is the current directory.")

    def ftp_CWD(self, path):
        """Change the current working directory."""
        path = self.fs.ftpnorm(path or "/")
        self.fs.chdir(path)
        self.respond("250 CWD command successful.")
        self.log_cmd("CWD", path, 250, "CWD command successful.")
        return path

    def ftp_CDUP(self, path):
        """Change into the parent directory."""
        return self.ftp_CWD("..")

    def ftp_SIZE(self, path):
        """Return size of file in a format suitable for using with
        RESTart as defined in RFC-3659.
        """
        path = self.fs.ftpnorm(path)
        node = self.store.lookup(path)
        if node is None:
            self.respond(f"550 {path}: No such file or directory.")
        elif isinstance(node, Directory):
            self.respond(f"550 {path}: not a regular file.")
        else:
            self.respond(f"213 {node.size}")

    def ftp_MKD(self, path):
        """Create the specified directory."""
        path = self.fs.ftpnorm(path)
        try:
            self.fs.mkdir(path)
        except AlreadyExists:
            msg = f"{_quote(path)} directory exists."
            self.respond("521 " + msg)
            self.log_cmd("MKD", path, 521, msg)
        else:
            msg = f"{_quote(path)} new directory created."
            self.respond("257 " + msg)
            self.log_cmd("MKD", path, 257, msg)
        return path

    def ftp_RMD(self, path):
        """Remove the specified directory and its whole content."""
        path = self.fs.ftpnorm(path)
        if path == "/":
            raise FilesystemError("Can't remove root directory")
        self.fs.rmdir(path)
        self.respond("250 RMD command successful.")
        self.log_cmd("RMD", path, 250, "RMD command successful.")
        return path

    def ftp_DELE(self, path):
        """Delete the specified file."""
        path = self.fs.ftpnorm(path)
        self.fs.remove(path)
        self.respond("250 File removed.")
        self.log_cmd("DELE", path, 250, "File removed.")
        return path

    def ftp_RNFR(self, path):
        """Rename the specified (only the source name is specified
        here, see RNTO command).
        """
        path = self.fs.ftpnorm(path)
        if path == "/":
            raise FilesystemError("Can't rename root directory")
        if not self.fs.exists(path):
            raise FilesystemError("No such file or directory")
        self._rnfr = path
        self.respond(
            "350 File or directory exists, ready for destination name."
        )
        return path

    def ftp_RNTO(self, path):
        """Rename file (destination name only, source is specified with
        RNFR).
        """
        if self._rnfr is None:
            raise BadSequence("Bad sequence of commands: use RNFR first")
        src, self._rnfr = self._rnfr, None
        path = self.fs.ftpnorm(path)
        try:
            self.fs.rename(src, path)
        except AlreadyExists:
            self.respond("550 File already exists.")
            self.log_cmd("RNTO", path, 550, "File already exists.")
        else:
            self.respond("250 Rename successful.")
            self.log_cmd("RNFR", src, 250, "Rename successful.")
            self.log_cmd("RNTO", path, 250, "Rename successful.")
        return (src, path)

    # --- others

    def ftp_NOOP(self, line):
        """Do nothing."""
        self.respond("200 I successfully done nothin'.")

    def ftp_SYST(self, line):
        """Return system type (always returns UNIX type: L8)."""
        # This command is used to find out the type of operating system
        # at the server.  The reply shall have as its first word one of
        # the system names listed in RFC-943.
        # Since that we always return a "/bin/ls -lA"-like output on
        # LIST we prefer to respond as if we would on Unix in any case.
        self.respond("215 UNIX Type: L8")

    def ftp_STAT(self, path):
        """If invoked without parameters, returns general status
        information about the FTP server process.
        If a parameter is given, acts like the LIST command, except
        that data is sent over the command channel (no PORT or PASV
        command is required).
        """
        # return STATus information about ftpd
        if not path:
            s = []
            host, port = self.socket.getsockname()[:2]
            s.append(f"Connected to: {host}:{port}")
            if self.authenticated:
                s.append(f"Logged in as: {self.username}")
            elif not self.username:
                s.append("Waiting for username.")
            else:
                s.append("Waiting for password.")
            type = "ASCII" if self.current_type == "a" else "Binary"
            s.append(f"TYPE: {type}; STRUcture: File; MODE: Stream")
            acceptor = self._dtp_acceptor
            if acceptor is not None and not acceptor._closed:
                s.append("Passive data channel waiting for connection.")
            elif self.data_channel is not None:
                s.append("Data connection open.")
            else:
                s.append("Data connection closed.")
            s.insert(0, "FTP server status:")
            s.append("End of status.")
            self.send_response(211, "\n".join(s))
        # return directory LISTing over the command channel
        else:
            path = self.fs.ftpnorm(path)
            node = self.store.lookup(path)
            if node is None:
                self.respond("450 No such file or directory.")
                return
            if isinstance(node, Directory):
                what = "it's a directory"
                listing = self.fs.format_list(path, self.fs.listdir(path))
            else:
                what = "it's a file"
                basedir = resolve(path, "..")
                filename = path.rsplit("/", 1)[1]
                listing = self.fs.format_list(basedir, [filename])
            lines = [f"Status of {_quote(path)}: {what}"]
            lines.extend(x.decode(self.encoding).rstrip() for x in listing)
            lines.append("End of status.")
            self.send_response(211, "\n".join(lines))
            return path
