# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

"""
Servers accepting FTP control connections and handing each of them
to a session handler (FTPHandler or a subclass).

FTPServer runs all sessions on a single IO loop, in the calling
thread: a handler must never block. ThreadedFTPServer accepts on the
calling thread and gives each session a thread and an IO loop of its
own.

Whatever the concurrency model, the sessions of a server share one
MemoryStore. It is picked, in this order, from the "store" argument,
from the handler's "store" class attribute, or created empty. Its
operations are serialized by the store's own lock.
"""

import errno
import logging
import os
import threading
import time
import traceback

from .filesystems import MemoryStore
from .ioloop import Acceptor
from .ioloop import IOLoop
from .log import config_logging
from .log import debug
from .log import logger

__all__ = ["FTPServer", "ThreadedFTPServer"]


# ===================================================================
# --- async
# ===================================================================


class FTPServer(Acceptor):
    """Listens on *address_or_socket* and starts a *handler* session
    for every client. IPv4 or IPv6 is picked from the address.

    Limits are class attributes:

     - (int) max_cons:
        maximum number of simultaneous connections, data channels
        included (defaults to 512, 0 means unlimited). Clients above
        the limit get "421 Too many connections" and are dropped.

     - (int) max_cons_per_ip:
        maximum number of control connections from one IP address
        (defaults to 0 == unlimited).
    """

    max_cons = 512
    max_cons_per_ip = 0

    def __init__(
        self,
        address_or_socket,
        handler,
        ioloop=None,
        backlog=100,
        store=None,
    ):
        """
         - (tuple) address_or_socket: a (host, port) pair to listen
           on, or an already listening socket object.

         - (class) handler: the session handler class.

         - (instance) ioloop: a ftpkit.ioloop.IOLoop instance.

         - (int) backlog: passed to listen(). Defaults to 100.

         - (instance) store: the MemoryStore the sessions of this
           server work on. Defaults to handler.store, then to a new
           empty MemoryStore.
        """
        Acceptor.__init__(self, ioloop=ioloop)
        self.handler = handler
        self.backlog = backlog
        self.ip_map = []
        if store is None:
            store = handler.store
        if store is None:
            store = MemoryStore()
        self._store = store
        if callable(getattr(address_or_socket, "listen", None)):
            address_or_socket.setblocking(False)
            self.set_socket(address_or_socket)
            self._af = address_or_socket.family
        else:
            self._af = self.bind_af_unspecified(address_or_socket)
        self.listen(backlog)

    def __enter__(self):
        return self

    def __exit__(self, *args):
        if not self._closed:
            self.close_all()

    @property
    def address(self):
        return self.socket.getsockname()[:2]

    @property
    def store(self):
        """The MemoryStore shared by the sessions of this server."""
        return self._store

    def _map_len(self):
        return len(self.ioloop.socket_map)

    def _accept_new_cons(self):
        """False once max_cons is reached (also checked before opening
        a data channel).
        """
        return not self.max_cons or self._map_len() <= self.max_cons

    def _concurrency_model(self):
        return "async"

    def _log_start(self):
        if not logging.getLogger("ftpkit").handlers:
            # nobody configured logging: log to stderr
            config_logging()
        ports = self.handler.passive_ports
        host, port = self.address
        logger.info(
            ">>> starting FTP server on %s:%s, pid=%i <<<",
            host,
            port,
            os.getpid(),
        )
        for name, value in (
            ("concurrency model", self._concurrency_model()),
            ("poller", repr(self.ioloop.__class__)),
            ("masquerade (NAT) address", self.handler.masquerade_address),
            ("passive ports", f"{ports[0]}->{ports[-1]}" if ports else None),
            ("filesystem", repr(self.store)),
        ):
            logger.info("%s: %s", name, value)

    def _log_stop(self):
        logger.info(
            ">>> shutting down FTP server, %s socket(s), pid=%i <<<",
            self._map_len(),
            os.getpid(),
        )

    def serve_forever(self, timeout=None, blocking=True, handle_exit=True):
        """Run the IO loop.

         - (float) timeout: passed to the underlying IO loop, in seconds.

         - (bool) blocking: when False poll once and return the time
           left before the soonest scheduled call (if any).

         - (bool) handle_exit: turn KeyboardInterrupt and SystemExit
           (SIGINT / SIGTERM) into a clean shutdown, closing every
           session; a blocking run also logs its start and stop.
        """
        if not handle_exit:
            return self.ioloop.loop(timeout, blocking)
        if blocking:
            self._log_start()
        try:
            self.ioloop.loop(timeout, blocking)
        except (KeyboardInterrupt, SystemExit):
            logger.info("received interrupt signal")
        if blocking:
            self._log_stop()
            self.close_all()

    def _admit(self, handler, ip):
        """Apply the connection limits; a refused handler has already
        replied 421 and closed itself.
        """
        if not self._accept_new_cons():
            handler.handle_max_cons()
            return False
        if self.max_cons_per_ip:
            if self.ip_map.count(ip) > self.max_cons_per_ip:
                handler.handle_max_cons_per_ip()
                return False
        return True

    def handle_accepted(self, sock, addr):
        """Start a session for a new client. Return the handler, or
        None if the session did not start.
        """
        handler = None
        try:
            handler = self.handler(sock, self, ioloop=self.ioloop)
            if not handler.connected:
                return None
            self.ip_map.append(addr[0])
            if not self._admit(handler, addr[0]):
                return None
            try:
                handler.handle()
            except Exception:
                handler.handle_error()
                return None
            return handler
        except Exception:
            # a handler bug must not take the whole server down
            logger.error(traceback.format_exc())
            if handler is not None:
                handler.close()
            return None

    def handle_error(self):
        try:
            raise  # noqa: PLE0704
        except Exception:
            logger.error(traceback.format_exc())
        self.close()

    def close_all(self):
        """Stop serving and disconnect every client."""
        return self.ioloop.close()


# ===================================================================
# --- threads
# ===================================================================


class ThreadedFTPServer(FTPServer):
    """FTPServer running every session in a thread of its own. Here
    max_cons counts threads.
    """

    # Upper bound for a session thread's poll() so that it notices
    # close_all(); threads never see KeyboardInterrupt.
    poll_timeout = 1.0
    # seconds close_all() waits for each session thread
    join_timeout = 5

    def __init__(self, *args, **kwargs):
        FTPServer.__init__(self, *args, **kwargs)
        self._sessions = []
        self._lock = threading.Lock()
        self._exit = threading.Event()

    def _concurrency_model(self):
        return "multi-thread"

    def _map_len(self):
        return threading.active_count()

    def _run_session(self, handler):
        ioloop = IOLoop()
        handler.ioloop = ioloop
        try:
            try:
                handler.add_channel()
            except OSError as err:
                if err.errno != errno.EBADF:
                    raise
                # the client went away before we got here
                debug("call: _run_session(); add_channel() gave EBADF")
                return
            # handle() armed the idle timer on the accepting loop
            handler._start_idler()
            self._drive(ioloop)
        finally:
            ioloop.close()

    def _drive(self, ioloop):
        """Poll *ioloop* until its session is over or the server is
        shutting down.
        """
        cap = self.poll_timeout
        wait = cap
        while not self._exit.is_set():
            sched = ioloop.sched
            if not ioloop.socket_map:
                # cancelled timers must not keep the thread alive
                sched.reheapify()
            if not ioloop.socket_map and not sched._tasks:
                break
            try:
                if ioloop.socket_map:
                    ioloop.poll(timeout=wait)
                next_call = sched.poll() if sched._tasks else None
                if not ioloop.socket_map and next_call:
                    time.sleep(min(next_call, cap or 1))
            except (KeyboardInterrupt, SystemExit):
                self._exit.set()
                break
            if next_call is None:
                wait = cap
            elif cap:
                wait = min(next_call, cap)
            else:
                wait = next_call

    def _reap(self):
        self._sessions = [t for t in self._sessions if t.is_alive()]

    def handle_accepted(self, sock, addr):
        handler = FTPServer.handle_accepted(self, sock, addr)
        if handler is None:
            return
        # from now on the session belongs to its own thread's loop
        self.ioloop.unregister(handler._fileno)
        t = threading.Thread(
            target=self._run_session,
            args=(handler,),
            name="ftpd-{}:{}".format(*addr[:2]),
        )
        t.start()
        with self._lock:
            self._reap()
            self._sessions.append(t)

    def serve_forever(self, timeout=1.0, blocking=True, handle_exit=True):
        self._exit.clear()
        FTPServer.serve_forever(
            self, timeout=timeout, blocking=blocking, handle_exit=handle_exit
        )

    def close_all(self):
        with self._lock:
            # snapshot first: finished threads leave the list once
            # the exit flag is set
            sessions = list(self._sessions)
            self._exit.set()
            self._join(sessions)
            self._sessions.clear()
        FTPServer.close_all(self)

    def _join(self, threads):
        for t in threads:
            t.join(self.join_timeout)
            if t.is_alive():
                # don't wait again for the others
                self.join_timeout = 0
                logger.warning("thread %r didn't terminate; ignoring it", t)
