# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

"""
ftpkit: asynchronous FTP client and server (RFC-959) sharing one IO
loop, plus an in-memory virtual filesystem used as server storage.

A hierarchy of classes outlined below implement the backend
functionality:

    [ftpkit.servers.FTPServer]
      accepts connections and dispatches them to a handler

    [ftpkit.handlers.FTPHandler]
      a class representing the server-protocol-interpreter
      (server-PI, see RFC-959). Each time a new connection occurs
      FTPServer will create a new FTPHandler instance to handle the
      current PI session.

    [ftpkit.handlers.ActiveDTP]
    [ftpkit.handlers.PassiveDTP]
      base classes for active/passive-DTP backends.

    [ftpkit.handlers.DTPHandler]
      this class handles processing of data transfer operations
      (server-DTP, see RFC-959).

    [ftpkit.authorizers.DummyAuthorizer]
      an "authorizer" is a class handling FTPd authentications.

    [ftpkit.filesystems.MemoryStore]
      the in-memory tree of directories and files shared by all the
      sessions of a server; every session sees it through a
      ftpkit.filesystems.MemoryFS instance holding its cwd.

    [ftpkit.client.FTPClient]
      the client-protocol-interpreter: commands are queued and matched
      to replies in FIFO order, results are delivered as
      concurrent.futures.Future objects.

Usage example:

>>> from ftpkit.authorizers import DummyAuthorizer
>>> from ftpkit.filesystems import MemoryStore
>>> from ftpkit.handlers import FTPHandler
>>> from ftpkit.servers import FTPServer
>>>
>>> authorizer = DummyAuthorizer()
>>> authorizer.add_user("user", "12345")
>>>
>>> handler = FTPHandler
>>> handler.authorizer = authorizer
>>>
>>> server = FTPServer(("127.0.0.1", 2121), handler, store=MemoryStore())
>>> server.serve_forever()
[I 2024-02-19 10:55:42] >>> starting FTP server on 127.0.0.1:2121 <<<
[I 2024-02-19 10:55:42] poller: <class 'ftpkit.ioloop.Epoll'>
[I 2024-02-19 10:55:42] masquerade (NAT) address: None
[I 2024-02-19 10:55:42] passive ports: None
[I 2024-02-19 10:55:45] 127.0.0.1:34178-[] FTP session opened (connect)
[I 2024-02-19 10:55:48] 127.0.0.1:34178-[user] USER 'user' logged in.
[I 2024-02-19 10:56:27] 127.0.0.1:34178-[user] STOR /notes.txt completed=1 bytes=1700 seconds=0.001
[I 2024-02-19 10:56:39] 127.0.0.1:34178-[user] FTP session closed (disconnect).
"""  # noqa: E501

__ver__ = "0.1.0"
__author__ = "Giampaolo Rodola' <g.rodola@gmail.com>"
