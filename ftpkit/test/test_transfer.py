# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

import io

import pytest

from ftpkit.client.transfer import StoreTransfer
from ftpkit.client.transfer import TransferSession
from ftpkit.client.transfer import as_producer
from ftpkit.client.transfer import as_sink
from ftpkit.protocol import Response

from . import FtpkitTestCase


class FakeWriter:
    """Records what a StoreTransfer writes. <limit> is the maximum
    number of bytes accepted by a single send() call; a list of
    limits is consumed one per call.
    """

    def __init__(self, limit=None):
        self.limit = limit
        self.sent = []
        self.shutdowns = 0

    def send(self, data):
        limit = self.limit
        if isinstance(limit, list):
            limit = limit.pop(0) if limit else None
        if limit is not None:
            data = data[:limit]
        if data:
            self.sent.append(bytes(data))
        return len(data)

    def shutdown_write(self):
        self.shutdowns += 1


def run(transfer, max_calls=100):
    for _ in range(max_calls):
        if transfer.resume():
            return
    raise AssertionError("transfer did not complete")


class TestAsProducer(FtpkitTestCase):

    def drain(self, producer):
        chunks = []
        while True:
            chunk = producer()
            if not chunk:
                return chunks
            chunks.append(chunk)

    def test_bytes(self):
        assert self.drain(as_producer(b"abc")) == [b"abc"]
        assert self.drain(as_producer(bytearray(b"abc"))) == [b"abc"]

    def test_str(self):
        assert self.drain(as_producer("àbc")) == ["àbc".encode()]

    def test_empty_buffer(self):
        assert self.drain(as_producer(b"")) == []

    def test_file_like(self):
        f = io.BytesIO(b"x" * 10)
        assert self.drain(as_producer(f, chunk_size=4)) == [
            b"xxxx",
            b"xxxx",
            b"xx",
        ]

    def test_callable(self):
        chunks = [b"a", b"b", None]
        producer = as_producer(lambda: chunks.pop(0))
        assert self.drain(producer) == [b"a", b"b"]

    def test_iterable(self):
        assert self.drain(as_producer(iter([b"a", "b"]))) == [b"a", b"b"]

    def test_not_pulled_after_exhaustion(self):
        calls = []

        def source():
            calls.append(None)
            return b""

        producer = as_producer(source)
        assert producer() == b""
        assert producer() == b""
        assert len(calls) == 1

    def test_unsupported(self):
        with pytest.raises(TypeError):
            as_producer(42)


class TestAsSink(FtpkitTestCase):

    def test_file_like(self):
        f = io.BytesIO()
        as_sink(f)(b"abc")
        assert f.getvalue() == b"abc"

    def test_callable(self):
        got = []
        as_sink(got.append)(b"abc")
        assert got == [b"abc"]

    def test_unsupported(self):
        with pytest.raises(TypeError):
            as_sink(42)


class TestStoreTransfer(FtpkitTestCase):

    def test_two_chunks_one_shutdown(self):
        chunks = [b"a", b"b"]
        writer = FakeWriter()
        transfer = StoreTransfer(
            as_producer(lambda: chunks.pop(0) if chunks else b""), writer
        )
        run(transfer)
        assert writer.sent == [b"a", b"b"]
        assert writer.shutdowns == 1
        assert transfer.done
        assert transfer.bytes_sent == 2
        # further calls are no-ops
        assert transfer.resume()
        assert writer.shutdowns == 1

    def test_pull_only_when_drained(self):
        pulls = []
        chunks = [b"abcdef", b"gh"]

        def source():
            pulls.append(None)
            return chunks.pop(0) if chunks else b""

        # the socket accepts 2 bytes, then blocks, then accepts 2...
        writer = FakeWriter(limit=[2, 0, 2, 0, 2, 2, 2])
        transfer = StoreTransfer(as_producer(source), writer)
        assert not transfer.resume()
        assert transfer.state == StoreTransfer.DRAINING
        assert len(pulls) == 1
        assert not transfer.resume()
        assert len(pulls) == 1
        assert not transfer.resume()
        # "abcdef" fully written only now: next call pulls again
        assert transfer.state == StoreTransfer.PULLING
        assert len(pulls) == 1
        run(transfer)
        assert b"".join(writer.sent) == b"abcdefgh"
        assert writer.shutdowns == 1
        assert transfer.bytes_sent == 8

    def test_empty_source(self):
        writer = FakeWriter()
        transfer = StoreTransfer(as_producer(b""), writer)
        assert transfer.resume()
        assert writer.sent == []
        assert writer.shutdowns == 1


class TestTransferSession(FtpkitTestCase):

    def test_fetch_collects(self):
        session = TransferSession("fetch")
        session.feed(b"ab")
        session.feed(b"c")
        assert bytes(session.received) == b"abc"
        assert session.bytes == 3

    def test_fetch_sink(self):
        got = []
        session = TransferSession("list", got.append)
        session.feed(b"x")
        assert got == [b"x"]
        assert session.received is None

    def test_store_requires_source(self):
        with pytest.raises(ValueError):
            TransferSession("store")
        session = TransferSession("store", b"data")
        writer = FakeWriter()
        run(session.make_store_transfer(writer))
        assert writer.sent == [b"data"]

    def test_invalid_direction(self):
        with pytest.raises(ValueError):
            TransferSession("upload")

    def test_unique_name(self):
        session = TransferSession("store", b"")
        assert session.unique_name is None
        session.preliminary.append(Response(150, "FILE: ftpd.abc"))
        assert session.unique_name == "ftpd.abc"
