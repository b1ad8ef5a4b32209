# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

"""
The cooperative IO loop every ftpkit channel runs on: a thin layer on
top of asyncore / asynchat using epoll() on Linux, poll() on other
POSIX systems and select() elsewhere, plus a scheduler for timed calls.

Channels never block: a handler runs to completion and then yields
back to the loop, which is what keeps a session's commands and
filesystem mutations from interleaving.

 ___________________________________________________________________
|                       |                                           |
| INSTEAD OF            | ...USE:                                   |
|_______________________|___________________________________________|
|                       |                                           |
| asyncore.dispatcher   | Acceptor (listening sockets)              |
| asyncore.dispatcher   | Connector (outgoing connections)          |
| asynchat.async_chat   | AsyncChat (a connected socket)            |
| asyncore.loop         | IOLoop.loop() / FTPServer.serve_forever() |
|_______________________|___________________________________________|
"""

import asynchat
import asyncore
import errno
import heapq
import os
import select
import socket
import sys
import threading
import time
import traceback

from .exceptions import _RetryError
from .log import config_logging
from .log import debug
from .log import logger

__all__ = ["Acceptor", "AsyncChat", "Connector", "IOLoop", "timer"]

timer = getattr(time, "monotonic", time.time)


def _errnos(*names):
    return {getattr(errno, x) for x in names if hasattr(errno, x)}


# the peer is gone
_ERRNOS_DISCONNECTED = _errnos(
    "ECONNRESET",
    "ENOTCONN",
    "ESHUTDOWN",
    "ECONNABORTED",
    "EPIPE",
    "EBADF",
    "ETIMEDOUT",
    "WSAECONNRESET",
    "WSAECONNABORTED",
)
# the non-blocking call would block: try again on the next loop
_ERRNOS_RETRY = _errnos("EAGAIN", "EWOULDBLOCK", "WSAEWOULDBLOCK")

# above this many cancelled (but still queued) calls the heap is
# rebuilt without them
_MAX_CANCELLATIONS = 512


# ===================================================================
# --- scheduler
# ===================================================================


class _Scheduler:
    """A heap of _CallLater instances ordered by deadline."""

    def __init__(self):
        self._tasks = []
        self._cancellations = 0

    def poll(self):
        """Run every call whose deadline has passed; return the seconds
        left before the next one, or None if nothing is scheduled.
        """
        now = timer()
        due = []
        while self._tasks and self._tasks[0].timeout <= now:
            call = heapq.heappop(self._tasks)
            if call.cancelled:
                self._cancellations -= 1
            else:
                due.append(call)

        # collected first: a call_every(0) runs once per poll()
        for call in due:
            if call._repush:
                # reset() while queued: back in with its new deadline
                call._repush = False
                heapq.heappush(self._tasks, call)
                continue
            try:
                call.call()
            except Exception:
                logger.error(traceback.format_exc())

        if (
            self._cancellations > _MAX_CANCELLATIONS
            and self._cancellations > len(self._tasks) // 2
        ):
            debug(f"re-heapifying {self._cancellations} cancelled tasks")
            self.reheapify()

        if self._tasks:
            return max(0, self._tasks[0].timeout - now)
        return None

    def register(self, call):
        heapq.heappush(self._tasks, call)

    def unregister(self, call):
        # stays in the heap until popped or reheapify()
        self._cancellations += 1

    def reheapify(self):
        """Drop cancelled calls and rebuild the heap."""
        self._tasks = [x for x in self._tasks if not x.cancelled]
        self._cancellations = 0
        heapq.heapify(self._tasks)


class _CallLater:
    """A call scheduled by IOLoop.call_later(); it can be reset() or
    cancel()led until it runs.
    """

    __slots__ = (
        "_args",
        "_delay",
        "_errback",
        "_kwargs",
        "_repush",
        "_sched",
        "_target",
        "cancelled",
        "timeout",
    )

    def __init__(self, seconds, target, *args, **kwargs):
        assert callable(target), f"{target!r} is not callable"
        assert 0 <= seconds <= sys.maxsize, f"invalid delay {seconds!r}"
        self._errback = kwargs.pop("_errback", None)
        self._sched = kwargs.pop("_scheduler")
        self._target = target
        self._args = args
        self._kwargs = kwargs
        self._delay = seconds
        self._repush = False
        self.cancelled = False
        # absolute deadline on the timer() clock; 0 means "asap"
        self.timeout = timer() + seconds if seconds else 0
        self._sched.register(self)

    def __lt__(self, other):
        return self.timeout < other.timeout

    def __le__(self, other):
        return self.timeout <= other.timeout

    def __repr__(self):
        return "<{} args={}, kwargs={}, cancelled={}, secs={}>".format(
            repr(self._target),
            self._args or "[]",
            self._kwargs or "{}",
            self.cancelled,
            self._delay,
        )

    __str__ = __repr__

    def _after_call(self, failed):
        self.cancel()

    def call(self):
        assert not self.cancelled, "already cancelled"
        failed = False
        try:
            self._target(*self._args, **self._kwargs)
        except Exception:
            failed = True
            if self._errback is None:
                raise
            self._errback()
        finally:
            self._after_call(failed)

    def reset(self):
        """Restart the countdown from now."""
        assert not self.cancelled, "already cancelled"
        self.timeout = timer() + self._delay
        self._repush = True

    def cancel(self):
        if self.cancelled:
            return
        self.cancelled = True
        self._target = self._args = self._kwargs = self._errback = None
        self._sched.unregister(self)


class _CallEvery(_CallLater):
    """A call repeated every `seconds` (IOLoop.call_every()) until it
    is cancelled or raises.
    """

    def _after_call(self, failed):
        if self.cancelled:
            return
        if failed:
            self.cancel()
        else:
            self.timeout = timer() + self._delay
            self._sched.register(self)


# ===================================================================
# --- pollers
# ===================================================================


class _IOLoop:
    """Base class of the pollers; the best one available is exported
    as IOLoop.
    """

    READ = 1
    WRITE = 2
    _instance = None
    _lock = threading.Lock()
    _started_once = False

    def __init__(self):
        self.socket_map = {}
        self.sched = _Scheduler()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()

    def __repr__(self):
        return "<{}.{} (fds={}, tasks={}) at {:#x}>".format(
            self.__class__.__module__,
            self.__class__.__name__,
            len(self.socket_map),
            len(self.sched._tasks),
            id(self),
        )

    __str__ = __repr__

    @classmethod
    def instance(cls):
        """The process-wide IOLoop, created on first use."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    def register(self, fd, instance, events):
        raise NotImplementedError("must be implemented in subclass")

    def unregister(self, fd):
        raise NotImplementedError("must be implemented in subclass")

    def modify(self, fd, events):
        raise NotImplementedError("must be implemented in subclass")

    def poll(self, timeout):
        """Wait up to *timeout* seconds for IO and dispatch it once."""
        raise NotImplementedError("must be implemented in subclass")

    def loop(self, timeout=None, blocking=True):
        """Run the loop.

         - (float) timeout: passed to each poll() call. When None the
           wait is bounded by the next scheduled call instead.

         - (bool) blocking: if True keep going as long as there are
           registered channels; if False poll once and return the
           seconds left before the next scheduled call (or None).
        """
        if not _IOLoop._started_once:
            _IOLoop._started_once = True
            if not logger.handlers and not logger.parent.handlers:
                # nobody configured logging: log to stderr
                config_logging()

        sched_poll = self.sched.poll
        if not blocking:
            if self.socket_map:
                self.poll(timeout)
            if self.sched._tasks:
                return sched_poll()
            return None

        wait = timeout
        while self.socket_map:
            self.poll(wait)
            soonest = sched_poll()
            if timeout is None:
                wait = soonest
        return None

    def call_later(self, seconds, target, *args, **kwargs):
        """Schedule `target(*args, **kwargs)` in *seconds* without
        blocking the loop. The returned object can be reset() or
        cancel()led. A special '_errback' keyword argument names a
        callable to run, instead of logging, if target raises.
        """
        kwargs["_scheduler"] = self.sched
        return _CallLater(seconds, target, *args, **kwargs)

    def call_every(self, seconds, target, *args, **kwargs):
        """Same as call_later() but repeated every *seconds*."""
        kwargs["_scheduler"] = self.sched
        return _CallEvery(seconds, target, *args, **kwargs)

    def close(self):
        """Close every registered channel and drop every scheduled
        call.
        """
        debug("closing IOLoop", self)
        if self.__class__._instance is self:
            self.__class__._instance = None

        for inst in sorted(self.socket_map.values(), key=lambda x: x._fileno):
            try:
                inst.close()
            except OSError as err:
                if err.errno != errno.EBADF:
                    logger.error(traceback.format_exc())
            except Exception:
                logger.error(traceback.format_exc())
        self.socket_map.clear()

        for call in self.sched._tasks:
            try:
                call.cancel()
            except Exception:
                logger.error(traceback.format_exc())
        del self.sched._tasks[:]

    def _dispatch(self, inst, readable, writable):
        if readable and inst.readable():
            asyncore.read(inst)
        if writable and inst.writable():
            asyncore.write(inst)


class Select(_IOLoop):
    """select() based poller; the only one on Windows."""

    def __init__(self):
        _IOLoop.__init__(self)
        self._r = []
        self._w = []

    def register(self, fd, instance, events):
        if fd in self.socket_map:
            return
        self.socket_map[fd] = instance
        if events & self.READ:
            self._r.append(fd)
        if events & self.WRITE:
            self._w.append(fd)

    def unregister(self, fd):
        if self.socket_map.pop(fd, None) is None:
            debug("call: unregister(); fd was no longer in socket_map", self)
        for fds in (self._r, self._w):
            if fd in fds:
                fds.remove(fd)

    def modify(self, fd, events):
        inst = self.socket_map.get(fd)
        if inst is None:
            debug("call: modify(); fd was no longer in socket_map", self)
            return
        self.unregister(fd)
        self.register(fd, inst, events)

    def poll(self, timeout):
        try:
            r, w, _ = select.select(self._r, self._w, [], timeout)
        except InterruptedError:
            return
        for fd in r:
            inst = self.socket_map.get(fd)
            if inst is not None:
                self._dispatch(inst, True, False)
        for fd in w:
            inst = self.socket_map.get(fd)
            if inst is not None:
                self._dispatch(inst, False, True)


class _BasePollEpoll(_IOLoop):
    """What poll() and epoll() have in common; subclasses set READ,
    WRITE, _ERROR and _poller.
    """

    def __init__(self):
        _IOLoop.__init__(self)
        self._poller = self._poller()

    def register(self, fd, instance, events):
        try:
            self._poller.register(fd, events | self._ERROR)
        except FileExistsError:
            debug("call: register(); poller raised EEXIST; ignored", self)
        self.socket_map[fd] = instance

    def unregister(self, fd):
        if self.socket_map.pop(fd, None) is None:
            debug("call: unregister(); fd was no longer in socket_map", self)
            return
        try:
            self._poller.unregister(fd)
        except OSError as err:
            if err.errno not in {errno.ENOENT, errno.EBADF}:
                raise
            debug(f"call: unregister(); poller raised {err!r}; ignored", self)

    def modify(self, fd, events):
        try:
            self._poller.modify(fd, events | self._ERROR)
        except FileNotFoundError:
            if fd not in self.socket_map:
                raise
            # the poller lost the fd but the channel is still alive
            self.register(fd, self.socket_map[fd], events)

    def poll(self, timeout):
        try:
            events = self._poller.poll(-1 if timeout is None else timeout)
        except InterruptedError:
            return
        for fd, event in events:
            inst = self.socket_map.get(fd)
            if inst is None:
                continue
            if event & self._ERROR and not event & self.READ:
                inst.handle_close()
            else:
                self._dispatch(
                    inst, event & self.READ, event & self.WRITE
                )


if hasattr(select, "poll"):

    class Poll(_BasePollEpoll):
        """poll() based poller."""

        READ = select.POLLIN
        WRITE = select.POLLOUT
        _ERROR = select.POLLERR | select.POLLHUP | select.POLLNVAL
        _poller = select.poll

        def poll(self, timeout):
            # milliseconds
            if timeout is not None:
                timeout = int(timeout * 1000)
            _BasePollEpoll.poll(self, timeout)


if hasattr(select, "epoll"):

    class Epoll(_BasePollEpoll):
        """epoll() based poller."""

        READ = select.EPOLLIN
        WRITE = select.EPOLLOUT
        _ERROR = select.EPOLLERR | select.EPOLLHUP
        _poller = select.epoll

        def fileno(self):
            return self._poller.fileno()

        def close(self):
            _IOLoop.close(self)
            self._poller.close()


if hasattr(select, "epoll"):
    IOLoop = Epoll
elif hasattr(select, "poll"):
    IOLoop = Poll
else:
    IOLoop = Select


# ===================================================================
# --- channels
# ===================================================================


class AsyncChat(asynchat.async_chat):
    """asynchat.async_chat registered against an IOLoop instead of
    asyncore's socket map. It asks for WRITE events only while it has
    something to send.
    """

    def __init__(self, sock=None, ioloop=None):
        self.ioloop = ioloop or IOLoop.instance()
        self._wanted_io_events = self.ioloop.READ
        self._current_io_events = self.ioloop.READ
        self._closed = False
        self._closing = False
        self._fileno = sock.fileno() if sock else None
        self._tasks = []
        asynchat.async_chat.__init__(self, sock)

    # --- IO loop registration (asyncore calls these with a map)

    def add_channel(self, map=None, events=None):
        assert self._fileno, repr(self._fileno)
        if events is None:
            events = self.ioloop.READ
        self.ioloop.register(self._fileno, self, events)
        self._wanted_io_events = self._current_io_events = events

    def del_channel(self, map=None):
        if self._fileno is not None:
            self.ioloop.unregister(self._fileno)

    def modify_ioloop_events(self, events, logdebug=False):
        if self._closed:
            return
        assert self._fileno, repr(self._fileno)
        if self._fileno not in self.ioloop.socket_map:
            debug(
                "call: modify_ioloop_events(); fd was no longer in "
                "socket_map, registering it again",
                inst=self,
            )
            self.add_channel(events=events)
        elif events != self._current_io_events:
            if logdebug:
                names = {
                    self.ioloop.READ: "R",
                    self.ioloop.WRITE: "W",
                    self.ioloop.READ | self.ioloop.WRITE: "RW",
                }
                ev = names.get(events, events)
                debug(f"call: IOLoop.modify(); setting {ev!r} events", self)
            self.ioloop.modify(self._fileno, events)
        self._current_io_events = events

    # --- utils

    def get_repr_info(self, as_str=False, extra_info=None):
        info = {"id": id(self), "addr": f"{self._fileno}"}
        info.update(extra_info or {})
        if as_str:
            return ", ".join(f"{k}={v!r}" for k, v in info.items())
        return info

    def __repr__(self):
        info = self.get_repr_info(as_str=True)
        return f"<{self.__class__.__name__}({info})>"

    __str__ = __repr__

    def call_later(self, seconds, target, *args, **kwargs):
        """IOLoop.call_later() bound to this channel: cancelled on
        close() and reporting failures to handle_error().
        """
        if "_errback" not in kwargs and hasattr(self, "handle_error"):
            kwargs["_errback"] = self.handle_error
        call = self.ioloop.call_later(seconds, target, *args, **kwargs)
        self._tasks.append(call)
        return call

    # --- socket IO

    def send(self, data):
        try:
            return self.socket.send(data)
        except OSError as err:
            debug(f"call: send(), err: {err}", inst=self)
            if err.errno in _ERRNOS_RETRY:
                return 0
            if err.errno in _ERRNOS_DISCONNECTED:
                self.handle_close()
                return 0
            raise

    def recv(self, buffer_size):
        try:
            data = self.socket.recv(buffer_size)
        except OSError as err:
            debug(f"call: recv(), err: {err}", inst=self)
            if err.errno in _ERRNOS_DISCONNECTED:
                self.handle_close()
                return b""
            if err.errno in _ERRNOS_RETRY:
                raise _RetryError from err
            raise
        if not data:
            # EOF
            self.handle_close()
        return data

    def handle_read(self):
        try:
            asynchat.async_chat.handle_read(self)
        except _RetryError:
            pass

    def initiate_send(self):
        asynchat.async_chat.initiate_send(self)
        if self._closed:
            debug("call: initiate_send(); called with no connection", self)
            return
        # keep reading (control channels take commands while sending);
        # write only while something is queued
        wanted = self.ioloop.READ
        if self.producer_fifo:
            wanted |= self.ioloop.WRITE
        if self._wanted_io_events != wanted:
            self.ioloop.modify(self._fileno, wanted)
            self._wanted_io_events = wanted

    def close_when_done(self):
        if not self.producer_fifo:
            self.handle_close()
            return
        self._closing = True
        asynchat.async_chat.close_when_done(self)

    def close(self):
        if self._closed:
            return
        self._closed = True
        try:
            asynchat.async_chat.close(self)
        finally:
            tasks, self._tasks = self._tasks, []
            for call in tasks:
                try:
                    call.cancel()
                except Exception:
                    logger.error(traceback.format_exc())
            self._closing = False
            self.connected = False


def _try_addresses(host, port, attempt):
    """Call attempt(family, socktype, sockaddr) for each address
    getaddrinfo() returns until one succeeds; return its family.
    attempt() cleans up after itself on failure.
    """
    err = "getaddrinfo() returned an empty list"
    info = socket.getaddrinfo(
        host, port, socket.AF_UNSPEC, socket.SOCK_STREAM, 0, socket.AI_PASSIVE
    )
    for af, socktype, _proto, _canonname, sa in info:
        try:
            attempt(af, socktype, sa)
        except OSError as exc:
            err = exc
            continue
        return af
    raise OSError(err)


class Acceptor(AsyncChat):
    """A listening channel; subclasses implement handle_accepted()."""

    def add_channel(self, map=None, events=None):
        AsyncChat.add_channel(self, map=map, events=self.ioloop.READ)

    def _discard_socket(self):
        if self.socket is not None:
            self.socket.close()
            self.del_channel()
            self.socket = None

    def bind_af_unspecified(self, addr):
        """bind() to *addr* whatever its address family; return the
        family used.
        """
        assert self.socket is None
        host, port = addr

        def attempt(af, socktype, sa):
            try:
                self.create_socket(af, socktype)
                self.set_reuse_addr()
                self.bind(sa)
            except OSError:
                self._discard_socket()
                raise

        try:
            # getaddrinfo() spells "all interfaces" None, not ""
            return _try_addresses(host or None, port, attempt)
        except OSError:
            self.del_channel()
            raise

    def listen(self, num):
        AsyncChat.listen(self, num)

    def handle_accept(self):
        try:
            sock, addr = self.accept()
        except TypeError:
            # accept() may return None on a spurious wakeup
            debug("call: handle_accept(); accept() returned None", self)
            return
        except OSError as err:
            # ECONNABORTED: the peer gave up before we accepted (*BSD)
            if err.errno != errno.ECONNABORTED:
                raise
            debug("call: handle_accept(); accept() gave ECONNABORTED", self)
            return
        # addr can be None as well
        if addr is not None:
            self.handle_accepted(sock, addr)

    def handle_accepted(self, sock, addr):
        sock.close()
        self.log_info("unhandled accepted event", "warning")

    if os.name == "nt" or sys.platform == "cygwin":

        # SO_REUSEADDR means something else (and unsafe) on Windows
        def set_reuse_addr(self):
            pass


class Connector(Acceptor):
    """An outgoing connection; connected once WRITE fires."""

    def add_channel(self, map=None, events=None):
        AsyncChat.add_channel(self, map=map, events=self.ioloop.WRITE)

    def connect_af_unspecified(self, addr, source_address=None):
        """connect() to *addr* whatever its address family, optionally
        from *source_address*; return the family used.
        """
        assert self.socket is None
        host, port = addr
        if source_address and source_address[0].startswith("::ffff:"):
            # IPv4-mapped IPv6 address: bind() the plain IPv4 one
            source_address = (source_address[0][7:], source_address[1])

        def attempt(af, socktype, sa):
            try:
                self.create_socket(af, socktype)
                if source_address:
                    self.bind(source_address)
                self.connect((host, port))
            except OSError:
                self._discard_socket()
                raise

        try:
            return _try_addresses(host, port, attempt)
        except OSError:
            self.del_channel()
            raise
