# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

__all__ = [
    "AlreadyExists",
    "AuthenticationFailed",
    "BadSequence",
    "CommandFailed",
    "ConnectionLost",
    "DataChannelTimeout",
    "Error",
    "FilesystemError",
    "IsADirectory",
    "NotADirectory",
    "NotFound",
    "ProtocolError",
]


class Error(Exception):
    """Base class for ftpkit exceptions."""


# --- server side


class FilesystemError(Error):
    """Raised by the in-memory filesystem when an operation cannot be
    carried out. The message is sent to the client as is.
    """


class NotFound(FilesystemError):
    """Path (or one of its parents) does not exist."""


class NotADirectory(FilesystemError):
    """Path exists but is not a directory."""


class IsADirectory(FilesystemError):
    """Path exists but is a directory."""


class AlreadyExists(FilesystemError):
    """Destination path is already taken."""


class BadSequence(Error):
    """A command was issued out of the order the protocol requires
    (e.g. RNTO with no RNFR pending).
    """


class AuthenticationFailed(Error):
    """Exception raised when authentication fails for any reason."""


# --- client side


class ProtocolError(Error):
    """The peer sent a reply which does not match the
    CODE<space>text / CODE-text grammar.
    """


class CommandFailed(Error):
    """The server answered a command with a 4xx or 5xx reply.
    The reply is available as the 'response' attribute.
    """

    def __init__(self, response):
        super().__init__(str(response))
        self.response = response

    @property
    def code(self):
        return self.response.code


class DataChannelTimeout(CommandFailed, TimeoutError):
    """The data connection could not be established in time."""


class ConnectionLost(Error, ConnectionError):
    """The control connection was closed (or became unusable) while
    commands were still pending.
    """


# --- private


class _RetryError(Exception):
    """Raised when a socket operation would block, and hence it should
    be retried at a later time.
    """


class _FileReadWriteError(OSError):
    """Exception raised when reading or writing a file during a transfer."""
