# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

import asynchat
import errno
import socket
import traceback

from ..exceptions import FilesystemError
from ..exceptions import _FileReadWriteError
from ..exceptions import _RetryError
from ..ioloop import AsyncChat
from ..ioloop import timer
from ..log import debug
from ..log import logger
from ..utils import strerror

__all__ = ["DTPHandler"]


class DTPHandler(AsyncChat):
    """The server data channel (server-DTP in RFC-959 terms). It carries
    exactly one transfer in one direction, then closes. Closing is what
    produces the final reply on the control channel: 226 if everything
    went through, 426 if not, 550 if an upload could not be stored.

    Class attributes:

     - (int) timeout: how long a transfer may stall with no progress
       before both channels are dropped (defaults 300).

     - (int) ac_in_buffer_size: incoming data buffer size (defaults 65536)

     - (int) ac_out_buffer_size: outgoing data buffer size (defaults 65536)
    """

    timeout = 300
    ac_in_buffer_size = 65536
    ac_out_buffer_size = 65536

    def __init__(self, sock, cmd_channel):
        self.cmd_channel = cmd_channel
        self.log = cmd_channel.log
        self.log_exception = cmd_channel.log_exception
        self.cmd = None
        self.file_obj = None
        self.receive = False
        self.started = False
        self.transfer_finished = False
        self.bytes_sent = 0
        self.bytes_received = 0
        self._progress_mark = 0
        self._start_time = timer()
        self._reply = None
        self._idler = None
        try:
            AsyncChat.__init__(self, sock, ioloop=cmd_channel.ioloop)
        except OSError as err:
            # asyncore needs a socket attribute before close()
            AsyncChat.__init__(
                self, socket.socket(), ioloop=cmd_channel.ioloop
            )
            self.close()
            if err.errno != errno.EINVAL:
                self.handle_error()
            return
        if not self.connected:
            self.close()
            return
        if self.timeout:
            self._idler = self.ioloop.call_every(
                self.timeout, self.handle_timeout, _errback=self.handle_error
            )

    def __repr__(self):
        info = self.cmd_channel.get_repr_info(as_str=True)
        return f"<{self.__class__.__name__}({info})>"

    __str__ = __repr__

    # --- transfer setup

    def start_transfer(self, cmd, file=None, producer=None):
        """Begin moving bytes for *cmd*. With a *producer* the channel
        sends its output and closes once it runs dry; without one it
        receives into *file* until the peer closes.
        """
        self.started = True
        self.cmd = cmd
        self.file_obj = file
        self.receive = producer is None
        events = self.ioloop.READ if self.receive else self.ioloop.WRITE
        self.modify_ioloop_events(events)
        self._wanted_io_events = events
        if self.receive:
            return
        try:
            AsyncChat.push_with_producer(self, producer)
            self.close_when_done()
        except Exception:
            self.handle_error()

    def _set_reply(self, code, text, logfun=logger.debug):
        self._reply = (f"{code} {text}", logfun)

    # --- accounting

    def get_transmitted_bytes(self):
        return self.bytes_sent + self.bytes_received

    def get_elapsed_time(self):
        return timer() - self._start_time

    # --- asyncore / asynchat overridden methods

    def close_when_done(self):
        asynchat.async_chat.close_when_done(self)

    def initiate_send(self):
        asynchat.async_chat.initiate_send(self)

    def send(self, data):
        sent = AsyncChat.send(self, data)
        self.bytes_sent += sent
        return sent

    def handle_read(self):
        try:
            chunk = self.recv(self.ac_in_buffer_size)
        except _RetryError:
            return
        except OSError:
            self.handle_error()
            return
        if not chunk:
            self.transfer_finished = True
            return
        self.bytes_received += len(chunk)
        try:
            self.file_obj.write(chunk)
        except OSError as err:
            raise _FileReadWriteError(err) from err

    handle_read_event = handle_read

    def readable(self):
        # readable before any transfer was started means the peer
        # hung up on us
        if not self.started:
            return self.close()
        return self.receive

    def writable(self):
        return not self.receive and asynchat.async_chat.writable(self)

    def handle_timeout(self):
        """Runs every `timeout` seconds; kicks the client if no byte
        moved since the previous run.
        """
        moved = self.get_transmitted_bytes()
        if moved > self._progress_mark:
            self._progress_mark = moved
            return
        self._set_reply(421, "Data connection timed out.", logger.info)
        self.close()
        self.cmd_channel.close_when_done()

    def handle_error(self):
        try:
            raise  # noqa: PLE0704
        except _FileReadWriteError as err:
            reason = strerror(err)
        except Exception:
            # don't leak internals to the client
            self.log_exception(self)
            reason = "Internal error"
        try:
            self._set_reply(
                426, f"{reason}; transfer aborted.", logger.warning
            )
            self.close()
        except Exception:
            logger.critical(traceback.format_exc())

    def handle_close(self):
        if self._closed:
            return
        # an upload ends when the client closes; a download only if
        # everything queued was actually sent
        if self.receive:
            self.transfer_finished = True
        else:
            self.transfer_finished = not self.producer_fifo
        if self.transfer_finished:
            self._set_reply(226, "Transfer complete.")
        else:
            self._set_reply(
                426,
                f"Transfer aborted; {self.get_transmitted_bytes()} bytes "
                "transmitted.",
            )
        self.close()

    def _release_file(self):
        # only a complete upload reaches the store; an aborted one
        # leaves the existing file untouched
        if not (self.receive and self.transfer_finished):
            self.file_obj.close()
            return
        try:
            self.file_obj.commit()
        except FilesystemError as err:
            # its directory may be gone by now
            self.transfer_finished = False
            self._set_reply(550, f"{err}.", logger.warning)

    def close(self):
        debug("call: close()", inst=self)
        if self._closed:
            return
        # RFC-959: close the data connection before replying
        AsyncChat.close(self)
        if self.file_obj is not None and not self.file_obj.closed:
            self._release_file()
        if self._reply is not None:
            text, logfun = self._reply
            self.cmd_channel.respond(text, logfun=logfun)
        if self._idler is not None and not self._idler.cancelled:
            self._idler.cancel()
        if self.file_obj is not None:
            self.cmd_channel.log_transfer(
                cmd=self.cmd,
                filename=self.file_obj.name,
                receive=self.receive,
                completed=self.transfer_finished,
                elapsed=round(self.get_elapsed_time(), 3),
                bytes=self.get_transmitted_bytes(),
            )
        self.cmd_channel._on_dtp_close()
