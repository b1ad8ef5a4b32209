# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

"""Dispatchers setting up the server side of a data connection.

PassiveDTP listens (PASV), ActiveDTP connects out (PORT). Both hand
the connected socket to the session's `dtp_handler` class and then
get out of the way; they never carry data themselves.
"""

import errno
import random
import socket
import traceback

from ..ioloop import Acceptor
from ..ioloop import Connector
from ..log import debug
from ..log import logger
from ..protocol import format_port

__all__ = ["ActiveDTP", "PassiveDTP"]


class _DTPDispatcher:
    """Glue shared by both dispatchers; `session` is the FTPHandler
    which created us.
    """

    def _attach(self, session):
        self.session = session
        self.cmd_channel = session
        self.log = session.log
        self.log_exception = session.log_exception

    def _handoff(self, sock):
        """Wrap *sock* in a DTPHandler and tell the session about it."""
        handler = self.session.dtp_handler(sock, self.session)
        if handler.connected:
            self.session.data_channel = handler
            self.session._on_dtp_connection()

    def _give_up(self, code, msg, logfun=logger.info):
        """Reply *code* on the control channel (if it is still there),
        close and let the session resume queued commands.
        """
        if self.session.connected:
            self.session.respond(f"{code} {msg}", logfun=logfun)
            self._log_reply(code, msg)
        self.close()
        self.session._on_dtp_failure()

    def _log_reply(self, code, msg):
        pass


class PassiveDTP(_DTPDispatcher, Acceptor):
    """Listens on the control connection's local address and accepts
    exactly one data connection. Used for PASV.

     - (int) timeout: seconds the client has to connect. Defaults to 30.

     - (int) backlog: the listen() backlog. Defaults to 5.
    """

    timeout = 30
    backlog = 5

    def __init__(self, cmd_channel):
        self._attach(cmd_channel)
        Acceptor.__init__(self, ioloop=cmd_channel.ioloop)
        local_ip = cmd_channel.socket.getsockname()[0]
        self.create_socket(cmd_channel.socket.family, socket.SOCK_STREAM)
        if cmd_channel.passive_ports is None:
            self.bind((local_ip, 0))
        else:
            self._bind_from_range(local_ip, list(cmd_channel.passive_ports))
        self.listen(self.backlog)

        port = self.socket.getsockname()[1]
        ip = cmd_channel.masquerade_address or local_ip
        self.session.respond(
            f"227 Entering passive mode ({format_port(ip, port)})."
        )
        if self.timeout:
            self.call_later(self.timeout, self.handle_timeout)

    def _bind_from_range(self, ip, ports):
        """Try the configured ports in random order; fall back to a
        kernel-assigned port once the range is exhausted.
        """
        random.shuffle(ports)
        self.set_reuse_addr()
        for port in ports:
            try:
                self.bind((ip, port))
            except PermissionError:
                self.log(f"can't bind() port {port} (EPERM)", logger.debug)
            except OSError as err:
                if err.errno != errno.EADDRINUSE:
                    raise
            else:
                return
        self.bind((ip, 0))
        self.log(
            "no free passive port in the configured range; using a "
            "kernel-assigned one",
            logfun=logger.warning,
        )

    def handle_accepted(self, sock, addr):
        if not self.session.connected:
            return self.close()
        peer = f"{addr[0]}:{addr[1]}"
        if addr[0] != self.session.remote_ip:
            if not self.session.permit_foreign_addresses:
                sock.close()
                # keep listening: the legit client may still connect
                self.session.respond(
                    "425 Rejected data connection from foreign address "
                    f"{peer}.",
                    logfun=logger.warning,
                )
                return
            self.log(
                f"accepted data connection from foreign address {peer}",
                logfun=logger.warning,
            )
        # one connection per PASV
        self.close()
        if self.session.connected:
            self._handoff(sock)
        else:
            sock.close()

    def handle_timeout(self):
        self._give_up(421, "Passive data channel timed out.")

    def handle_error(self):
        try:
            raise  # noqa: PLE0704
        except Exception:
            logger.error(traceback.format_exc())
        try:
            self.close()
        except Exception:
            logger.critical(traceback.format_exc())

    def close(self):
        debug("call: close()", inst=self)
        Acceptor.close(self)


class ActiveDTP(_DTPDispatcher, Connector):
    """Connects to the address given with PORT, from the control
    connection's local IP. The 200 reply is sent only once connected.

     - (int) timeout: seconds to wait for connect() to complete.
    """

    timeout = 30

    def __init__(self, ip, port, cmd_channel):
        Connector.__init__(self, ioloop=cmd_channel.ioloop)
        self._attach(cmd_channel)
        self._addr = f"{ip}:{port}"
        self._idler = None
        if self.timeout:
            self._idler = self.ioloop.call_later(
                self.timeout, self.handle_timeout, _errback=self.handle_error
            )
        source_ip = cmd_channel.socket.getsockname()[0]
        try:
            self.connect_af_unspecified((ip, port), (source_ip, 0))
        except OSError:
            self.handle_close()

    def _log_reply(self, code, msg):
        self.session.log_cmd("PORT", self._addr, code, msg)

    def _cancel_idler(self):
        if self._idler is not None and not self._idler.cancelled:
            self._idler.cancel()

    def readable(self):
        return False

    def handle_connect(self):
        self.del_channel()
        self._cancel_idler()
        if not self.session.connected:
            return self.close()
        err = self.socket.getsockopt(socket.SOL_SOCKET, socket.SO_ERROR)
        if err:
            raise OSError(err, errno.errorcode.get(err, str(err)))
        msg = "Active data connection established."
        self.session.respond(f"200 {msg}")
        self._log_reply(200, msg)
        if not self.session.connected:
            return self.close()
        self._handoff(self.socket)

    def handle_timeout(self):
        self._give_up(421, "Active data channel timed out.")

    def handle_close(self):
        # the fd showed up as exceptional: connect() failed
        if not self._closed:
            self._give_up(
                425, "Can't connect to specified address.", logger.debug
            )

    def handle_error(self):
        try:
            raise  # noqa: PLE0704
        except OSError:
            pass
        except Exception:
            self.log_exception(self)
        try:
            self.handle_close()
        except Exception:
            logger.critical(traceback.format_exc())

    def close(self):
        debug("call: close()", inst=self)
        if not self._closed:
            Connector.close(self)
            self._cancel_idler()
