# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

"""Client side of the data channel.

A DataConnection is created for every transfer command and never
reused. It goes through the following states:

    INIT --> LISTENING  --> ESTABLISHED --> CLOSED    (active, PORT)
    INIT --> CONNECTING --> ESTABLISHED --> CLOSED    (passive, PASV)

Any state can jump to CLOSED on error, timeout or when the control
connection goes away.
"""

import socket
import traceback

from ..exceptions import CommandFailed
from ..exceptions import DataChannelTimeout
from ..exceptions import _RetryError
from ..ioloop import Acceptor
from ..ioloop import AsyncChat
from ..ioloop import Connector
from ..log import debug
from ..log import logger
from ..protocol import Response

__all__ = ["DataChannel", "DataConnection"]

INIT = "INIT"
LISTENING = "LISTENING"
CONNECTING = "CONNECTING"
ESTABLISHED = "ESTABLISHED"
CLOSED = "CLOSED"

_transitions = {
    INIT: {LISTENING, CONNECTING, CLOSED},
    LISTENING: {ESTABLISHED, CLOSED},
    CONNECTING: {ESTABLISHED, CLOSED},
    ESTABLISHED: {CLOSED},
    CLOSED: set(),
}


class DataChannel(AsyncChat):
    """An established data connection. Received bytes are handed to
    the TransferSession sink; for uploads it acts as the writer of a
    StoreTransfer, sending a chunk every time the socket is writable.
    """

    ac_in_buffer_size = 65536

    def __init__(self, sock, connection):
        self.connection = connection
        self.session = connection.session
        self.transfer = None
        AsyncChat.__init__(self, sock, ioloop=connection.ioloop)

    def start_store(self):
        """Start pulling chunks from the session's producer."""
        if self.transfer is None:
            self.transfer = self.session.make_store_transfer(self)
            self.modify_ioloop_events(self.ioloop.READ | self.ioloop.WRITE)

    # --- writer interface used by StoreTransfer

    def shutdown_write(self):
        debug("call: shutdown_write()", inst=self)
        try:
            self.socket.shutdown(socket.SHUT_WR)
        except OSError:
            self.handle_close()

    # --- asyncore / asynchat overridden methods

    def readable(self):
        return self.connected

    def writable(self):
        return self.transfer is not None and not self.transfer.done

    def handle_read(self):
        try:
            chunk = self.recv(self.ac_in_buffer_size)
        except _RetryError:
            return
        if chunk and self.session.direction != "store":
            self.session.feed(chunk)

    handle_read_event = handle_read

    def handle_write(self):
        done = self.transfer.resume()
        self.session.bytes = self.transfer.bytes_sent
        if done and not self._closed:
            # wait for the server to close its side
            self.modify_ioloop_events(self.ioloop.READ)

    def handle_error(self):
        try:
            raise  # noqa: PLE0704
        except Exception as err:
            logger.error(traceback.format_exc())
            self.connection.error = err
        try:
            self.close()
        except Exception:
            logger.critical(traceback.format_exc())

    def handle_close(self):
        self.close()

    def close(self):
        debug("call: close()", inst=self)
        if not self._closed:
            AsyncChat.close(self)
            self.connection._channel_closed()


class _DataAcceptor(Acceptor):
    """Listens for the server connecting back to us (PORT)."""

    def __init__(self, connection, local_ip, family):
        Acceptor.__init__(self, ioloop=connection.ioloop)
        self.connection = connection
        self.create_socket(family, socket.SOCK_STREAM)
        self.bind((local_ip, 0))
        self.listen(1)

    @property
    def address(self):
        return self.socket.getsockname()[:2]

    def handle_accepted(self, sock, addr):
        debug(f"call: handle_accepted(); from {addr[0]}:{addr[1]}", self)
        self.close()
        self.connection._established(sock)

    def handle_error(self):
        try:
            raise  # noqa: PLE0704
        except Exception as err:
            logger.error(traceback.format_exc())
            self.close()
            self.connection._fail(err)


class _DataConnector(Connector):
    """Connects to the address advertised by a 227 reply (PASV)."""

    def __init__(self, connection, host, port):
        Connector.__init__(self, ioloop=connection.ioloop)
        self.connection = connection
        try:
            self.connect_af_unspecified((host, port))
        except (socket.gaierror, OSError) as err:
            self.connection._fail(_cant_connect(err))

    def readable(self):
        return False

    def handle_connect(self):
        self.del_channel()
        err = self.socket.getsockopt(socket.SOL_SOCKET, socket.SO_ERROR)
        if err != 0:
            raise OSError(err, "connect() failed")
        self.connection._established(self.socket)

    def handle_close(self):
        # handle_close() gets called in case the fd appears in the
        # list of exceptional fds, meaning connect() failed.
        if not self._closed:
            self.close()
            self.connection._fail(_cant_connect())

    def handle_error(self):
        try:
            raise  # noqa: PLE0704
        except (socket.gaierror, OSError) as err:
            self.close()
            self.connection._fail(_cant_connect(err))
        except Exception as err:
            logger.error(traceback.format_exc())
            self.close()
            self.connection._fail(err)


def _cant_connect(err=None):
    text = "Can't open data connection."
    if err is not None:
        text = f"Can't open data connection: {err}."
    return CommandFailed(Response(425, text))


class DataConnection:
    """The data connection of a single transfer command.

     - (str) mode: "active" or "passive".
     - (str) state: one of INIT, LISTENING, CONNECTING, ESTABLISHED
       and CLOSED.
     - (instance) channel: the DataChannel, once ESTABLISHED.
     - (instance) error: the exception which closed the connection,
       if any.

    <client> gets notified by calling its _on_data_established(),
    _on_data_closed() and _on_data_failed() methods.
    """

    def __init__(self, client, session, passive=True, timeout=30):
        self.client = client
        self.session = session
        self.ioloop = client.ioloop
        self.mode = "passive" if passive else "active"
        self.timeout = timeout
        self.state = INIT
        self.channel = None
        self.error = None
        self._dispatcher = None
        self._timer = None

    def __repr__(self):
        return "<%s(mode=%r, state=%s)>" % (
            self.__class__.__name__,
            self.mode,
            self.state,
        )

    def _set_state(self, state):
        if state not in _transitions[self.state]:
            raise RuntimeError(
                f"invalid data connection transition {self.state} -> "
                f"{state}"
            )
        debug(f"data connection {self.state} -> {state}", self)
        self.state = state

    def _start_timer(self):
        if self.timeout:
            self._timer = self.ioloop.call_later(
                self.timeout, self._handle_timeout
            )

    def _cancel_timer(self):
        if self._timer is not None and not self._timer.cancelled:
            self._timer.cancel()
        self._timer = None

    # --- API

    def listen(self, local_ip, family=socket.AF_INET):
        """Active mode: listen on <local_ip> (the local address of the
        control connection) and return the (host, port) pair to
        advertise with PORT.
        """
        self._set_state(LISTENING)
        self._start_timer()
        self._dispatcher = _DataAcceptor(self, local_ip, family)
        return self._dispatcher.address

    def connect(self, host, port):
        """Passive mode: connect to the address parsed from a 227
        reply.
        """
        self._set_state(CONNECTING)
        self._start_timer()
        self._dispatcher = _DataConnector(self, host, port)

    def start_store(self):
        self.channel.start_store()

    def close(self):
        """Close the connection without notifying the client."""
        if self.state == CLOSED:
            return
        self._set_state(CLOSED)
        self._cancel_timer()
        if self._dispatcher is not None:
            self._dispatcher.close()
            self._dispatcher = None
        if self.channel is not None:
            self.channel.close()

    # --- internal callbacks

    def _handle_timeout(self):
        self._timer = None
        if self.state in {LISTENING, CONNECTING}:
            self._fail(
                DataChannelTimeout(
                    Response(425, "Data connection timed out.")
                )
            )

    def _established(self, sock):
        self._cancel_timer()
        self._dispatcher = None
        if self.state == CLOSED:
            sock.close()
            return
        self._set_state(ESTABLISHED)
        self.channel = DataChannel(sock, self)
        self.client._on_data_established(self)

    def _fail(self, err):
        if self.state == CLOSED:
            return
        self.error = err
        self.close()
        self.client._on_data_failed(self, err)

    def _channel_closed(self):
        if self.state == CLOSED:
            return
        self._set_state(CLOSED)
        self._cancel_timer()
        self.client._on_data_closed(self)
