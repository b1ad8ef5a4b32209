# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

import io
import random
import string
import threading
import time

from .exceptions import AlreadyExists
from .exceptions import FilesystemError
from .exceptions import IsADirectory
from .exceptions import NotADirectory
from .exceptions import NotFound

__all__ = ["Directory", "File", "MemoryFS", "MemoryStore", "resolve"]


_months_map = {
    1: "Jan",
    2: "Feb",
    3: "Mar",
    4: "Apr",
    5: "May",
    6: "Jun",
    7: "Jul",
    8: "Aug",
    9: "Sep",
    10: "Oct",
    11: "Nov",
    12: "Dec",
}


# ===================================================================
# --- path resolution
# ===================================================================


def _segments(base, path):
    if path.startswith("/"):
        parts = path.split("/")
    else:
        parts = base.split("/") + path.split("/")
    parts = [x for x in parts if x and x != "."]
    while ".." in parts:
        i = parts.index("..")
        if i == 0:
            # root has no parent: clamp
            del parts[0]
        else:
            del parts[i - 1 : i + 1]
    return parts


def resolve(base, path):
    """Normalize a "virtual" UNIX-style path against base (an absolute
    directory) and return an absolute path.

    >>> resolve('/a/b', '../../c')
    '/c'
    >>> resolve('/a/b', './x/../y')
    '/a/b/y'

    ".." never climbs above "/".
    """
    return "/" + "/".join(_segments(base, path))


def _split(path):
    """Split an absolute normalized path into (parent, basename)."""
    parts = _segments("/", path)
    if not parts:
        return None, ""
    return "/" + "/".join(parts[:-1]), parts[-1]


# ===================================================================
# --- nodes
# ===================================================================


class File:
    __slots__ = ("data", "mtime")

    def __init__(self, data=b""):
        self.data = bytes(data)
        self.mtime = time.time()

    def __repr__(self):
        return f"<File(size={len(self.data)})>"

    @property
    def size(self):
        return len(self.data)


class Directory:
    __slots__ = ("children", "mtime")

    def __init__(self):
        self.children = {}
        self.mtime = time.time()

    def __repr__(self):
        return f"<Directory(entries={len(self.children)})>"

    @property
    def size(self):
        return 0


# ===================================================================
# --- shared tree
# ===================================================================


class MemoryStore:
    """An in-memory tree of directories and files.

    One instance is meant to be shared by reference by all the
    sessions of a server; a mutation done by one session is visible
    to the others as soon as it returns. Every operation runs while
    holding a re-entrant lock so that sessions served by different
    threads (see ThreadedFTPServer) never interleave on the tree.

    Failures are signaled by raising FilesystemError subclasses:
    NotFound, NotADirectory, IsADirectory and AlreadyExists.
    """

    def __init__(self):
        self.root = Directory()
        self.lock = threading.RLock()

    def __repr__(self):
        return "<%s(entries=%s) at %#x>" % (
            self.__class__.__name__,
            len(self.root.children),
            id(self),
        )

    # --- internals

    def _walk(self, path):
        node = self.root
        for name in _segments("/", path):
            if not isinstance(node, Directory):
                return None
            node = node.children.get(name)
            if node is None:
                return None
        return node

    def _parent(self, path):
        """Return (parent Directory, basename) for path raising
        FilesystemError if the parent is missing or is not a directory.
        """
        dirname, basename = _split(path)
        if dirname is None:
            raise FilesystemError("Operation not permitted on root directory")
        parent = self._walk(dirname)
        if parent is None:
            raise NotFound("No such file or directory")
        if not isinstance(parent, Directory):
            raise NotADirectory("Not a directory")
        return parent, basename

    # --- queries

    def lookup(self, path):
        """Return the node at path or None if path (or one of its
        parents) does not exist.
        """
        with self.lock:
            return self._walk(path)

    def listdir(self, path):
        """Return the sorted entry names of directory path."""
        with self.lock:
            node = self._walk(path)
            if node is None:
                raise NotFound("No such file or directory")
            if not isinstance(node, Directory):
                raise NotADirectory("Not a directory")
            return sorted(node.children)

    def read(self, path):
        with self.lock:
            node = self._walk(path)
            if node is None:
                raise NotFound("No such file or directory")
            if isinstance(node, Directory):
                raise IsADirectory("Is a directory")
            return node.data

    # --- mutations

    def mkdir(self, path):
        with self.lock:
            parent, name = self._parent(path)
            if name in parent.children:
                raise AlreadyExists("File exists")
            parent.children[name] = Directory()
            parent.mtime = time.time()

    def write(self, path, data, append=False):
        """Create (or replace) file path with data. If append is True
        data is added to the end of the existing file instead.
        """
        with self.lock:
            parent, name = self._parent(path)
            node = parent.children.get(name)
            if isinstance(node, Directory):
                raise IsADirectory("Is a directory")
            if append and node is not None:
                node.data += bytes(data)
                node.mtime = time.time()
            else:
                parent.children[name] = File(data)
                parent.mtime = time.time()

    def create_unique(self, dirpath, prefix="ftpd.", length=8):
        """Create an empty file with a unique name inside dirpath
        and return its absolute path.
        """
        chars = string.ascii_lowercase + string.digits + "_"
        with self.lock:
            node = self._walk(dirpath)
            if node is None:
                raise NotFound("No such file or directory")
            if not isinstance(node, Directory):
                raise NotADirectory("Not a directory")
            while True:
                name = prefix + "".join(random.choices(chars, k=length))
                if name not in node.children:
                    break
            path = resolve(dirpath, name)
            self.write(path, b"")
            return path

    def remove(self, path):
        """Remove file path."""
        with self.lock:
            parent, name = self._parent(path)
            node = parent.children.get(name)
            if node is None:
                raise NotFound("No such file or directory")
            if isinstance(node, Directory):
                raise IsADirectory("Is a directory")
            del parent.children[name]
            parent.mtime = time.time()

    def rmdir(self, path):
        """Remove directory path together with everything it contains."""
        with self.lock:
            parent, name = self._parent(path)
            node = parent.children.get(name)
            if node is None:
                raise NotFound("No such file or directory")
            if not isinstance(node, Directory):
                raise NotADirectory("Not a directory")
            del parent.children[name]
            parent.mtime = time.time()

    def rename(self, src, dst):
        """Move the node (and its subtree) at src to dst. dst must not
        exist. Either the whole move happens or nothing changes.
        """
        with self.lock:
            src = resolve("/", src)
            dst = resolve("/", dst)
            src_parent, src_name = self._parent(src)
            node = src_parent.children.get(src_name)
            if node is None:
                raise NotFound("No such file or directory")
            dst_parent, dst_name = self._parent(dst)
            if dst_name in dst_parent.children:
                raise AlreadyExists("File already exists")
            if dst.startswith(src + "/"):
                raise FilesystemError(
                    "Can't move a directory into one of its subdirectories"
                )
            del src_parent.children[src_name]
            dst_parent.children[dst_name] = node
            src_parent.mtime = dst_parent.mtime = time.time()


# ===================================================================
# --- file objects
# ===================================================================


class _ReadFile(io.BytesIO):
    """A snapshot of a stored file, as returned by MemoryFS.open()."""

    def __init__(self, name, data):
        super().__init__(data)
        self.name = name


class _UploadFile(io.BytesIO):
    """Buffer collecting an upload. Its content reaches the store only
    through commit(); close() alone throws it away.
    """

    def __init__(self, name, store, append=False):
        super().__init__()
        self.name = name
        self.store = store
        self.append = append

    def commit(self):
        """Write the buffer into the store, then close it."""
        if self.closed:
            raise ValueError("I/O operation on closed file.")
        try:
            self.store.write(self.name, self.getvalue(), self.append)
        finally:
            self.close()


# ===================================================================
# --- per-session view
# ===================================================================


class MemoryFS:
    """A per-session view on a MemoryStore, holding the session
    current working directory and providing the same kind of interface
    a FTP handler expects from a filesystem (chdir, isdir, open,
    listdir, format_list...).

    All path arguments are expected to be absolute and normalized
    (see ftpnorm()).
    """

    def __init__(self, store, cmd_channel, home="/"):
        """
        - (instance) store: the MemoryStore shared by all sessions.
        - (instance) cmd_channel: the FTPHandler class instance.
        - (str) home: the initial working directory.
        """
        self.store = store
        self.cmd_channel = cmd_channel
        self._cwd = "/"
        if self.isdir(resolve("/", home)):
            self._cwd = resolve("/", home)

    @property
    def cwd(self):
        """The current working directory. If another session removed
        it, fall back to the nearest ancestor still existing.
        """
        if not self.isdir(self._cwd):
            path = self._cwd
            while path != "/":
                path = resolve(path, "..")
                if self.isdir(path):
                    break
            self._cwd = path
        return self._cwd

    @cwd.setter
    def cwd(self, path):
        self._cwd = path

    # --- pathname utilities

    def ftpnorm(self, ftppath):
        """Normalize a "virtual" ftp pathname (typically the raw string
        coming from client) depending on the current working directory.

        Example (having "/foo" as current working directory):
        >>> ftpnorm('bar')
        '/foo/bar'
        """
        return resolve(self.cwd, ftppath)

    # --- wrappers around the store

    def chdir(self, path):
        node = self.store.lookup(path)
        if node is None:
            raise NotFound("No such file or directory")
        if not isinstance(node, Directory):
            raise NotADirectory("Not a directory")
        self._cwd = path

    def open(self, filename, mode):
        """Return a file object for filename. Mode "rb" returns a
        snapshot of the file content; "wb" and "ab" return a buffer
        which is stored into the tree by its commit() method.
        """
        if mode == "rb":
            return _ReadFile(filename, self.store.read(filename))
        if mode not in {"wb", "ab"}:
            raise ValueError(f"invalid mode {mode!r}")
        # fail now rather than when the transfer is over
        with self.store.lock:
            parent, name = self.store._parent(filename)
            if isinstance(parent.children.get(name), Directory):
                raise IsADirectory("Is a directory")
        return _UploadFile(filename, self.store, append=mode == "ab")

    def mkstemp(self, dir, prefix="ftpd."):
        """Reserve a unique file name inside dir and return an upload
        buffer for it.
        """
        path = self.store.create_unique(dir, prefix=prefix)
        return _UploadFile(path, self.store)

    def mkdir(self, path):
        self.store.mkdir(path)

    def rmdir(self, path):
        self.store.rmdir(path)

    def remove(self, path):
        self.store.remove(path)

    def rename(self, src, dst):
        self.store.rename(src, dst)

    def listdir(self, path):
        return self.store.listdir(path)

    def exists(self, path):
        return self.store.lookup(path) is not None

    def isfile(self, path):
        return isinstance(self.store.lookup(path), File)

    def isdir(self, path):
        return isinstance(self.store.lookup(path), Directory)

    def getsize(self, path):
        node = self.store.lookup(path)
        if node is None:
            raise NotFound("No such file or directory")
        if not isinstance(node, File):
            raise IsADirectory("not a regular file")
        return node.size

    # --- listing utilities

    def format_list(self, basedir, listing):
        """Return an iterator object that yields the entries of given
        directory emulating the "/bin/ls -lA" UNIX command output.

         - (str) basedir: the absolute dirname.
         - (list) listing: the names of the entries in basedir

        Entries which disappear while listing are skipped.

        drwxrwxrwx   1 owner    group           0 Aug 31 18:50 e-books
        -rw-rw-rw-   1 owner    group         380 Sep 02  3:40 module.py
        """
        SIX_MONTHS = 180 * 24 * 60 * 60
        now = time.time()
        encoding = getattr(self.cmd_channel, "encoding", "utf8")
        for basename in listing:
            node = self.store.lookup(resolve(basedir, basename))
            if node is None:
                continue
            if isinstance(node, Directory):
                perms = "drwxrwxrwx"
            else:
                perms = "-rw-rw-rw-"
            mtime = time.localtime(node.mtime)
            # if modification time > 6 months shows "month year"
            # else "month hh:mm"
            if now - node.mtime > SIX_MONTHS:
                fmtstr = "%d  %Y"
            else:
                fmtstr = "%d %H:%M"
            mtimestr = "%s %s" % (
                _months_map[mtime.tm_mon],
                time.strftime(fmtstr, mtime),
            )
            line = "%s %3s %-8s %-8s %8s %s %s\r\n" % (
                perms,
                1,
                "owner",
                "group",
                node.size,
                mtimestr,
                basename,
            )
            yield line.encode(encoding, "replace")

    def format_nlst(self, listing):
        """Yield the bare entry names, one per line."""
        encoding = getattr(self.cmd_channel, "encoding", "utf8")
        for basename in listing:
            yield (basename + "\r\n").encode(encoding, "replace")
