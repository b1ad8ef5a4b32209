# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

import threading

import pytest

from ftpkit.exceptions import AlreadyExists
from ftpkit.exceptions import FilesystemError
from ftpkit.exceptions import IsADirectory
from ftpkit.exceptions import NotADirectory
from ftpkit.exceptions import NotFound
from ftpkit.filesystems import Directory
from ftpkit.filesystems import File
from ftpkit.filesystems import MemoryFS
from ftpkit.filesystems import MemoryStore
from ftpkit.filesystems import resolve

from . import FtpkitTestCase


class TestResolve(FtpkitTestCase):

    def test_examples(self):
        assert resolve("/a/b", "../../c") == "/c"
        assert resolve("/a/b", "./x/../y") == "/a/b/y"

    def test_absolute_ignores_base(self):
        assert resolve("/a/b", "/x/y") == "/x/y"
        assert resolve("/a/b", "/") == "/"

    def test_relative(self):
        assert resolve("/", "") == "/"
        assert resolve("/", ".") == "/"
        assert resolve("/", "a") == "/a"
        assert resolve("/", "a/") == "/a"
        assert resolve("/sub", "") == "/sub"
        assert resolve("/sub", "a/b") == "/sub/a/b"
        assert resolve("/sub", "a/b/..") == "/sub/a"
        assert resolve("/sub", "a/b/../..") == "/sub"

    def test_clamp_at_root(self):
        assert resolve("/", "..") == "/"
        assert resolve("/", "../../..") == "/"
        assert resolve("/sub", "a/b/../../../..") == "/"
        assert resolve("/a", "../../b") == "/b"

    def test_collapse_slashes(self):
        assert resolve("/", "//") == "/"
        assert resolve("/", "a//b///c") == "/a/b/c"
        assert resolve("/a/", "./b/./") == "/a/b"

    def test_idempotent(self):
        for path in ("/a/../b/./c", "x/y/..", "../..", "a//b"):
            once = resolve("/base/dir", path)
            assert resolve("/", once) == once
            assert resolve("/somewhere/else", once) == once


class TestMemoryStore(FtpkitTestCase):

    def setUp(self):
        super().setUp()
        self.store = MemoryStore()

    def test_lookup_root(self):
        assert isinstance(self.store.lookup("/"), Directory)

    def test_mkdir_rmdir(self):
        self.store.mkdir("/a")
        assert isinstance(self.store.lookup("/a"), Directory)
        self.store.rmdir("/a")
        assert self.store.lookup("/a") is None

    def test_mkdir_errors(self):
        self.store.mkdir("/a")
        with pytest.raises(AlreadyExists):
            self.store.mkdir("/a")
        with pytest.raises(NotFound):
            self.store.mkdir("/missing/a")
        self.store.write("/file", b"x")
        with pytest.raises(NotADirectory):
            self.store.mkdir("/file/a")
        with pytest.raises(FilesystemError):
            self.store.mkdir("/")

    def test_lookup_through_file(self):
        self.store.write("/file", b"x")
        assert self.store.lookup("/file/sub") is None
        assert self.store.lookup("/missing/sub") is None

    def test_write_read(self):
        self.store.write("/f", b"hello")
        assert self.store.read("/f") == b"hello"
        node = self.store.lookup("/f")
        assert isinstance(node, File)
        assert node.size == 5
        self.store.write("/f", b"bye")
        assert self.store.read("/f") == b"bye"

    def test_write_append(self):
        self.store.write("/f", b"foo", append=True)
        self.store.write("/f", b"bar", append=True)
        assert self.store.read("/f") == b"foobar"

    def test_write_on_directory(self):
        self.store.mkdir("/d")
        with pytest.raises(IsADirectory):
            self.store.write("/d", b"x")
        with pytest.raises(IsADirectory):
            self.store.read("/d")

    def test_remove(self):
        self.store.write("/f", b"x")
        self.store.remove("/f")
        assert self.store.lookup("/f") is None
        with pytest.raises(NotFound):
            self.store.remove("/f")
        self.store.mkdir("/d")
        with pytest.raises(IsADirectory):
            self.store.remove("/d")

    def test_rmdir_subtree(self):
        self.store.mkdir("/d")
        self.store.mkdir("/d/e")
        self.store.write("/d/e/f", b"x")
        self.store.rmdir("/d")
        assert self.store.lookup("/d") is None
        assert self.store.lookup("/d/e/f") is None

    def test_rmdir_errors(self):
        with pytest.raises(NotFound):
            self.store.rmdir("/d")
        self.store.write("/f", b"")
        with pytest.raises(NotADirectory):
            self.store.rmdir("/f")

    def test_listdir(self):
        self.store.mkdir("/d")
        self.store.write("/d/b", b"")
        self.store.write("/d/a", b"")
        assert self.store.listdir("/d") == ["a", "b"]
        with pytest.raises(NotADirectory):
            self.store.listdir("/d/a")
        with pytest.raises(NotFound):
            self.store.listdir("/nope")

    def test_rename(self):
        self.store.mkdir("/d")
        self.store.write("/d/f", b"data")
        self.store.rename("/d", "/e")
        assert self.store.lookup("/d") is None
        assert self.store.read("/e/f") == b"data"

    def test_rename_dst_exists(self):
        self.store.write("/a", b"aaa")
        self.store.write("/b", b"bbb")
        with pytest.raises(AlreadyExists):
            self.store.rename("/a", "/b")
        # nothing changed
        assert self.store.read("/a") == b"aaa"
        assert self.store.read("/b") == b"bbb"

    def test_rename_errors(self):
        with pytest.raises(NotFound):
            self.store.rename("/a", "/b")
        self.store.write("/a", b"")
        with pytest.raises(NotFound):
            self.store.rename("/a", "/missing/b")
        assert self.store.lookup("/a") is not None
        self.store.mkdir("/d")
        with pytest.raises(FilesystemError):
            self.store.rename("/d", "/d/sub")
        assert isinstance(self.store.lookup("/d"), Directory)

    def test_create_unique(self):
        self.store.mkdir("/d")
        names = set()
        for _ in range(10):
            path = self.store.create_unique("/d", prefix="x.")
            assert path.startswith("/d/x.")
            names.add(path)
        assert len(names) == 10
        assert len(self.store.listdir("/d")) == 10
        with pytest.raises(NotFound):
            self.store.create_unique("/missing")

    def test_concurrent_mutations(self):
        def worker(n):
            for i in range(50):
                self.store.write(f"/f-{n}-{i}", b"x")

        threads = [
            threading.Thread(target=worker, args=(n,)) for n in range(4)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(self.store.listdir("/")) == 200


class TestMemoryFS(FtpkitTestCase):

    def setUp(self):
        super().setUp()
        self.store = MemoryStore()
        self.fs = MemoryFS(self.store, None)

    def test_ftpnorm(self):
        ae = self.assertEqual
        self.fs.cwd = "/"
        ae(self.fs.ftpnorm(""), "/")
        ae(self.fs.ftpnorm(".."), "/")
        ae(self.fs.ftpnorm("a/b/.."), "/a")
        self.store.mkdir("/sub")
        self.fs.chdir("/sub")
        ae(self.fs.ftpnorm(""), "/sub")
        ae(self.fs.ftpnorm("a"), "/sub/a")
        ae(self.fs.ftpnorm("a/b/../../.."), "/")

    def test_home(self):
        self.store.mkdir("/home")
        fs = MemoryFS(self.store, None, home="/home")
        assert fs.cwd == "/home"
        # a missing home falls back on root
        fs = MemoryFS(self.store, None, home="/nope")
        assert fs.cwd == "/"

    def test_chdir(self):
        self.store.mkdir("/d")
        self.store.write("/f", b"")
        self.fs.chdir("/d")
        assert self.fs.cwd == "/d"
        with pytest.raises(NotFound):
            self.fs.chdir("/nope")
        with pytest.raises(NotADirectory):
            self.fs.chdir("/f")
        assert self.fs.cwd == "/d"

    def test_cwd_removed_by_someone_else(self):
        self.store.mkdir("/a")
        self.store.mkdir("/a/b")
        self.store.mkdir("/a/b/c")
        self.fs.chdir("/a/b/c")
        # another session removes part of our cwd
        MemoryFS(self.store, None).rmdir("/a/b")
        assert self.fs.cwd == "/a"
        assert self.fs.ftpnorm("x") == "/a/x"

    def test_open_read(self):
        self.store.write("/f", b"content")
        with self.fs.open("/f", "rb") as f:
            assert f.read() == b"content"
            assert f.name == "/f"
        with pytest.raises(NotFound):
            self.fs.open("/nope", "rb")

    def test_open_write_commit(self):
        f = self.fs.open("/f", "wb")
        f.write(b"foo")
        # not visible until committed
        assert self.store.lookup("/f") is None
        f.commit()
        assert f.closed
        assert self.store.read("/f") == b"foo"
        f = self.fs.open("/f", "ab")
        f.write(b"bar")
        f.commit()
        assert self.store.read("/f") == b"foobar"
        with pytest.raises(ValueError):
            f.commit()

    def test_open_write_close_discards(self):
        self.store.write("/f", b"original")
        with self.fs.open("/f", "wb") as f:
            f.write(b"partial")
        assert self.store.read("/f") == b"original"
        f = self.fs.open("/new", "wb")
        f.write(b"x")
        f.close()
        assert self.store.lookup("/new") is None

    def test_open_write_errors(self):
        self.store.mkdir("/d")
        with pytest.raises(IsADirectory):
            self.fs.open("/d", "wb")
        with pytest.raises(NotFound):
            self.fs.open("/missing/f", "wb")
        with pytest.raises(ValueError):
            self.fs.open("/f", "r+")

    def test_mkstemp(self):
        f = self.fs.mkstemp("/", prefix="up.")
        assert f.name.startswith("/up.")
        f.write(b"data")
        f.commit()
        assert self.store.read(f.name) == b"data"

    def test_queries(self):
        self.store.mkdir("/d")
        self.store.write("/d/f", b"12345")
        assert self.fs.exists("/d")
        assert self.fs.isdir("/d")
        assert not self.fs.isfile("/d")
        assert self.fs.isfile("/d/f")
        assert self.fs.getsize("/d/f") == 5
        assert not self.fs.exists("/x")
        with pytest.raises(IsADirectory):
            self.fs.getsize("/d")
        with pytest.raises(NotFound):
            self.fs.getsize("/x")

    def test_format_list(self):
        self.store.mkdir("/d")
        self.store.write("/f", b"12345")
        lines = list(self.fs.format_list("/", self.fs.listdir("/")))
        assert len(lines) == 2
        assert lines[0].startswith(b"drwxrwxrwx")
        assert lines[0].endswith(b" d\r\n")
        assert lines[1].startswith(b"-rw-rw-rw-")
        assert b" 5 " in lines[1]
        assert lines[1].endswith(b" f\r\n")

    def test_format_list_skips_vanished(self):
        self.store.write("/f", b"")
        lines = list(self.fs.format_list("/", ["f", "gone"]))
        assert len(lines) == 1

    def test_format_nlst(self):
        self.store.write("/a", b"")
        self.store.write("/b", b"")
        data = b"".join(self.fs.format_nlst(self.fs.listdir("/")))
        assert data == b"a\r\nb\r\n"
