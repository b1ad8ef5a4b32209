# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

import pytest

from ftpkit.authorizers import AuthenticationFailed
from ftpkit.authorizers import AuthorizerError
from ftpkit.authorizers import DummyAuthorizer

from . import HOME
from . import PASSWD
from . import USER
from . import FtpkitTestCase


class TestDummyAuthorizer(FtpkitTestCase):
    """Tests for DummyAuthorizer class."""

    def test_common_methods(self):
        auth = DummyAuthorizer()
        # create user
        auth.add_user(USER, PASSWD, HOME)
        auth.add_anonymous(HOME)
        # check credentials
        auth.validate_authentication(USER, PASSWD, None)
        with pytest.raises(AuthenticationFailed):
            auth.validate_authentication(USER, "wrongpwd", None)
        auth.validate_authentication("anonymous", "foo", None)
        auth.validate_authentication("anonymous", "", None)  # empty passwd
        # remove them
        auth.remove_user(USER)
        auth.remove_user("anonymous")
        # raise exc if user does not exists
        with pytest.raises(KeyError):
            auth.remove_user(USER)
        # raise exc if path does not exist
        with pytest.raises(AuthorizerError, match="must be absolute"):
            auth.add_user(USER, PASSWD, "relative/dir")
        # raise exc if user already exists
        auth.add_user(USER, PASSWD)
        auth.add_anonymous()
        with pytest.raises(AuthorizerError, match="already exists"):
            auth.add_user(USER, PASSWD)
        with pytest.raises(AuthorizerError, match="already exists"):
            auth.add_anonymous()
        auth.remove_user(USER)
        auth.remove_user("anonymous")

    def test_unknown_user(self):
        auth = DummyAuthorizer()
        with pytest.raises(AuthenticationFailed, match="failed"):
            auth.validate_authentication("nobody", "x", None)
        with pytest.raises(AuthenticationFailed, match="Anonymous"):
            auth.validate_authentication("anonymous", "x", None)

    def test_no_password(self):
        auth = DummyAuthorizer()
        auth.add_user("guest", None)
        auth.add_user(USER, PASSWD)
        assert not auth.requires_password("guest")
        assert auth.requires_password(USER)
        auth.validate_authentication("guest", "", None)
        auth.validate_authentication("guest", "whatever", None)

    def test_messages(self):
        auth = DummyAuthorizer()
        auth.add_user(
            USER, PASSWD, "/home", msg_login="hi there", msg_quit="bye"
        )
        assert auth.has_user(USER)
        assert not auth.has_user("other")
        assert auth.get_home_dir(USER) == "/home"
        assert auth.get_msg_login(USER) == "hi there"
        assert auth.get_msg_quit(USER) == "bye"
        assert auth.get_msg_quit("other") == "Goodbye."
