# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

"""An "authorizer" is a class handling authentications of the
FTP server. It is used by FTPHandler class for verifying user's
password and getting the user's home directory and login / quit
messages.

DummyAuthorizer is the only one provided: it keeps a table of
"virtual" users in memory. Custom authorizers can be written by
providing the same methods:

    validate_authentication(username, password, handler)
    has_user(username)
    get_home_dir(username)
    get_msg_login(username)
    get_msg_quit(username)
"""

from .exceptions import AuthenticationFailed
from .exceptions import Error

__all__ = ["AuthenticationFailed", "AuthorizerError", "DummyAuthorizer"]


class AuthorizerError(Error):
    """Base class for authorizer exceptions."""


class DummyAuthorizer:
    """Basic "dummy" authorizer class, suitable for subclassing to
    create your own custom authorizers.
    """

    def __init__(self):
        self.user_table = {}

    def add_user(
        self,
        username,
        password,
        homedir="/",
        msg_login="Login successful.",
        msg_quit="Goodbye.",
    ):
        """Add a user to the virtual users table.

        AuthorizerError exception is raised on error conditions such
        as duplicate usernames.

        - (str) username: the username.
        - (str) password: the password; None means no password is
          asked at all.
        - (str) homedir: the user's initial directory in the virtual
          filesystem (falls back to "/" if it does not exist at login).
        - (str) msg_login: the string sent when client logs in.
        - (str) msg_quit: the string sent when client quits.
        """
        if self.has_user(username):
            raise AuthorizerError(f"user {username!r} already exists")
        if not homedir.startswith("/"):
            raise AuthorizerError(f"home dir {homedir!r} must be absolute")
        self.user_table[username] = {
            "pwd": None if password is None else str(password),
            "home": homedir,
            "msg_login": str(msg_login),
            "msg_quit": str(msg_quit),
        }

    def add_anonymous(self, homedir="/", **kwargs):
        """Add an anonymous user to the virtual users table; any
        password is accepted.
        """
        self.add_user("anonymous", "", homedir, **kwargs)

    def remove_user(self, username):
        """Remove a user from the virtual users table."""
        del self.user_table[username]

    def validate_authentication(self, username, password, handler):
        """Raises AuthenticationFailed if supplied username and
        password don't match the stored credentials, else return
        None.
        """
        msg = "Authentication failed."
        if not self.has_user(username):
            if username == "anonymous":
                msg = "Anonymous access not allowed."
            raise AuthenticationFailed(msg)
        if username != "anonymous":
            pwd = self.user_table[username]["pwd"]
            if pwd is not None and pwd != password:
                raise AuthenticationFailed(msg)

    def requires_password(self, username):
        """Whether USER must be followed by PASS. Users added with
        password=None are logged in by USER alone.
        """
        return self.user_table[username]["pwd"] is not None

    def has_user(self, username):
        """Whether the username exists in the virtual users table."""
        return username in self.user_table

    def get_home_dir(self, username):
        """Return the user's home directory."""
        return self.user_table[username]["home"]

    def get_msg_login(self, username):
        """Return the user's login message."""
        return self.user_table[username]["msg_login"]

    def get_msg_quit(self, username):
        """Return the user's quitting message."""
        try:
            return self.user_table[username]["msg_quit"]
        except KeyError:
            return "Goodbye."
