# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

import errno
import logging
import os
import sys
from unittest.mock import patch

from ftpkit.log import LogFormatter
from ftpkit.log import debug
from ftpkit.utils import memoize
from ftpkit.utils import strerror

from . import FtpkitTestCase


def make_record(msg, *args, level=logging.INFO, exc_info=None):
    return logging.LogRecord(
        "ftpkit", level, __file__, 1, msg, args, exc_info
    )


class TestUtils(FtpkitTestCase):

    def test_memoize(self):
        calls = []

        @memoize
        def square(x):
            calls.append(x)
            return x * x

        assert square(3) == 9
        assert square(3) == 9
        assert calls == [3]
        square.cache_clear()
        assert square(3) == 9
        assert calls == [3, 3]
        assert square.__name__ == "square"

    def test_strerror(self):
        err = OSError(errno.ENOENT, "whatever")
        assert strerror(err) == os.strerror(errno.ENOENT)
        assert strerror(ValueError("bad value")) == "bad value"
        assert strerror(OSError("no errno")) == "no errno"


class TestLogFormatter(FtpkitTestCase):

    def setUp(self):
        super().setUp()
        with patch("ftpkit.log.term_supports_colors", return_value=False):
            self.formatter = LogFormatter()

    def test_prefix(self):
        out = self.formatter.format(make_record("hello %s", "world"))
        assert out.startswith("[I ")
        assert out.endswith("] hello world")

    def test_bad_message(self):
        out = self.formatter.format(make_record("%d", "not a number"))
        assert "Bad message" in out

    def test_bytes_message(self):
        out = self.formatter.format(make_record(b"raw"))
        assert out.endswith("b'raw'")

    def test_traceback_is_indented(self):
        try:
            1 / 0  # noqa: B018
        except ZeroDivisionError:
            exc_info = sys.exc_info()
        record = make_record("boom", level=logging.ERROR, exc_info=exc_info)
        lines = self.formatter.format(record).splitlines()
        assert lines[0].endswith("boom")
        assert all(x.startswith("    ") for x in lines[1:])
        assert "ZeroDivisionError" in lines[-1]

    def test_debug_names_the_instance(self):
        with patch("ftpkit.log.logger.debug") as m:
            debug("closing", inst="chan")
        m.assert_called_once_with("[debug] closing ('chan')")
