# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

"""Byte pumping over an established data connection.

Uploads are pull-based: a chunk is requested from the producer only
after the previous one has been entirely accepted by the socket, so
a slow peer never makes us buffer more than one chunk. Downloads are
push-based: every chunk read from the socket is handed to the sink
straight away.
"""

from concurrent.futures import Future

__all__ = ["StoreTransfer", "TransferSession", "as_producer", "as_sink"]

CHUNK_SIZE = 65536


def _to_bytes(data, encoding="utf8"):
    if data is None:
        return b""
    if isinstance(data, str):
        return data.encode(encoding)
    return bytes(data)


def as_producer(source, chunk_size=CHUNK_SIZE, encoding="utf8"):
    """Normalize the supported upload sources to a callable returning
    the next chunk of bytes or b"" on exhaustion:

     - a bytes, bytearray or str buffer, consumed at once.
     - a file-like object with read(size), read until it returns
       an empty string.
     - a callable returning the next chunk, or None / b"" when done.
     - an iterable of chunks.

    str chunks are encoded with <encoding>.
    """
    if isinstance(source, (bytes, bytearray, memoryview, str)):
        buf = [source]

        def produce():
            return _to_bytes(buf.pop(), encoding) if buf else b""

    elif callable(getattr(source, "read", None)):

        def produce():
            return _to_bytes(source.read(chunk_size), encoding)

    elif callable(source):

        def produce():
            return _to_bytes(source(), encoding)

    else:
        try:
            it = iter(source)
        except TypeError:
            raise TypeError(
                f"unsupported producer type {type(source).__name__!r}"
            ) from None

        def produce():
            return _to_bytes(next(it, None), encoding)

    exhausted = []

    def wrapper():
        # once exhausted the source is never pulled again
        if exhausted:
            return b""
        chunk = produce()
        if not chunk:
            exhausted.append(True)
        return chunk

    return wrapper


def as_sink(sink):
    """Return a callable accepting each received chunk. <sink> is
    either a callable or an object with a write() method.
    """
    if callable(getattr(sink, "write", None)):
        return sink.write
    if callable(sink):
        return sink
    raise TypeError(f"unsupported sink type {type(sink).__name__!r}")


class StoreTransfer:
    """Pull-based upload state machine.

     - PULLING: the writer drained everything; ask the producer for
       the next chunk, or shut down the write side on exhaustion.
     - DRAINING: part of the current chunk is still to be written.
     - SHUTDOWN: the producer is exhausted and shutdown_write() was
       called (exactly once).

    <writer> must provide send(data) -> int, returning the number of
    bytes actually written (0 if it would block), and
    shutdown_write().
    """

    PULLING = "PULLING"
    DRAINING = "DRAINING"
    SHUTDOWN = "SHUTDOWN"

    def __init__(self, producer, writer):
        self.producer = producer
        self.writer = writer
        self.state = self.PULLING
        self.bytes_sent = 0
        self._chunk = b""

    def __repr__(self):
        return "<%s(state=%s, bytes_sent=%s)>" % (
            self.__class__.__name__,
            self.state,
            self.bytes_sent,
        )

    @property
    def done(self):
        return self.state == self.SHUTDOWN

    def resume(self):
        """Advance the transfer for as long as the writer accepts data.
        At most one chunk is pulled per call. Return True once the
        write side has been shut down.
        """
        if self.state == self.PULLING:
            chunk = self.producer()
            if not chunk:
                self.state = self.SHUTDOWN
                self.writer.shutdown_write()
                return True
            self._chunk = chunk
            self.state = self.DRAINING

        while self.state == self.DRAINING:
            sent = self.writer.send(self._chunk)
            if not sent:
                break
            self.bytes_sent += sent
            self._chunk = self._chunk[sent:]
            if not self._chunk:
                self.state = self.PULLING
        return self.state == self.SHUTDOWN


class TransferSession:
    """The byte pipeline of a single transfer command.

     - (str) direction: "store", "fetch" or "list".
     - (int) bytes: the number of bytes moved so far.
     - (list) preliminary: the 1xx responses received for the command.
     - (instance) future: resolved with the final Response of the
       transfer command (or failed with CommandFailed).
    """

    directions = ("store", "fetch", "list")

    def __init__(self, direction, endpoint=None, encoding="utf8"):
        if direction not in self.directions:
            raise ValueError(f"invalid direction {direction!r}")
        self.direction = direction
        self.bytes = 0
        self.preliminary = []
        self.future = Future()
        self.received = None
        self.producer = None
        self._write = None
        if direction == "store":
            if endpoint is None:
                raise ValueError("a source is required to store data")
            self.producer = as_producer(endpoint, encoding=encoding)
        elif endpoint is None:
            self.received = bytearray()
            self._write = self.received.extend
        else:
            self._write = as_sink(endpoint)

    def __repr__(self):
        return "<%s(direction=%r, bytes=%s)>" % (
            self.__class__.__name__,
            self.direction,
            self.bytes,
        )

    @property
    def unique_name(self):
        """The file name a server announced for STOU with a
        "150 FILE: <name>" reply, if any.
        """
        for resp in self.preliminary:
            if resp.text.startswith("FILE: "):
                return resp.text[6:]
        return None

    def feed(self, data):
        """Hand a chunk read from the data connection to the sink."""
        self.bytes += len(data)
        self._write(data)

    def make_store_transfer(self, writer):
        return StoreTransfer(self.producer, writer)
