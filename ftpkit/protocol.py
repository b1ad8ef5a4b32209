# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

"""
Control channel framing shared by the client and the server.

A reply is either a single line ("CODE<SP>text") or a multi-line block
opened by "CODE-text" and closed by the first line starting with the
same "CODE<SP>":

    150-line one
    150 line two

...which is parsed into Response(150, "line one\\nline two").
"""

import re

from .exceptions import ProtocolError

__all__ = [
    "Response",
    "ResponseParser",
    "format_port",
    "format_response",
    "parse_pasv",
    "parse_port",
]


_re_reply = re.compile(r"^(\d{3})(?:([ -])(.*))?$")
_re_pasv = re.compile(r"(\d+),\s*(\d+),\s*(\d+),\s*(\d+),\s*(\d+),\s*(\d+)")
_re_looks_like_reply = re.compile(r"^ *\d{3}")
_re_indented_reply = re.compile(r"^ +\d{3}")


class Response:
    """A server reply: numeric code plus the (joined) reply text."""

    __slots__ = ("code", "text")

    def __init__(self, code, text=""):
        code = int(code)
        if not 100 <= code <= 599:
            raise ValueError(f"invalid reply code {code!r}")
        self.code = code
        self.text = text

    def __repr__(self):
        return f"<{self.__class__.__name__}({self.code}, {self.text!r})>"

    def __str__(self):
        return f"{self.code} {self.text}"

    def __eq__(self, other):
        if not isinstance(other, Response):
            return NotImplemented
        return (self.code, self.text) == (other.code, other.text)

    def __hash__(self):
        return hash((self.code, self.text))

    @property
    def lines(self):
        return self.text.split("\n")

    def is_preliminary(self):
        return 100 <= self.code < 200

    def is_success(self):
        return 200 <= self.code < 300

    def is_intermediate(self):
        return 300 <= self.code < 400

    def is_failure(self):
        return self.code >= 400


class ResponseParser:
    """Incremental reply parser fed with one line at a time (line
    terminator already stripped).

    States:

     - IDLE: waiting for the first line of a reply
     - MULTILINE: a "CODE-" line was received; collecting continuation
       lines until "CODE<SP>" shows up. A continuation line starting
       with spaces and three digits loses one leading space.
    """

    IDLE = "idle"
    MULTILINE = "multiline"

    def __init__(self):
        self.state = self.IDLE
        self._code = None
        self._lines = []

    def reset(self):
        self.state = self.IDLE
        self._code = None
        self._lines = []

    def feed(self, line):
        """Feed a single line. Return a Response once a complete reply
        has been collected, else None. Raise ProtocolError if line does
        not match the reply grammar.
        """
        if isinstance(line, bytes):
            line = line.decode("utf8", "replace")
        line = line.rstrip("\r\n")

        if self.state == self.MULTILINE:
            if line.startswith(self._code + " ") or line == self._code:
                self._lines.append(line[4:])
                resp = Response(self._code, "\n".join(self._lines))
                self.reset()
                return resp
            if _re_indented_reply.match(line):
                # undo the indentation added by format_response()
                line = line[1:]
            self._lines.append(line)
            return None

        m = _re_reply.match(line)
        if m is None:
            raise ProtocolError(f"invalid reply line {line!r}")
        code, sep, text = m.groups()
        if not 100 <= int(code) <= 599:
            raise ProtocolError(f"invalid reply code in {line!r}")
        text = text or ""
        if sep == "-":
            self.state = self.MULTILINE
            self._code = code
            self._lines = [text]
            return None
        return Response(code, text)

    def feed_data(self, data):
        """Parse a chunk of CRLF separated lines and return the list
        of completed Responses.
        """
        if isinstance(data, bytes):
            data = data.decode("utf8", "replace")
        ret = []
        for line in data.splitlines():
            resp = self.feed(line)
            if resp is not None:
                ret.append(resp)
        return ret


def format_response(code, text=""):
    """Serialize a reply to its wire form (str, CRLF terminated).
    Multi-line text produces a "CODE-" block; continuation lines which
    could be mistaken for a reply line (optionally indented digits) get
    one more leading space, which ResponseParser strips again.
    """
    lines = str(text).replace("\r\n", "\n").split("\n")
    if len(lines) == 1:
        return f"{code} {lines[0]}\r\n"
    out = [f"{code}-{lines[0]}"]
    for line in lines[1:-1]:
        if _re_looks_like_reply.match(line):
            line = " " + line
        out.append(line)
    out.append(f"{code} {lines[-1]}")
    return "\r\n".join(out) + "\r\n"


# --- data channel addresses


def parse_pasv(text):
    """Extract (host, port) from a "227 Entering passive mode
    (h1,h2,h3,h4,p1,p2)" reply text.
    """
    m = _re_pasv.search(text)
    if m is None:
        raise ProtocolError(f"can't parse PASV reply {text!r}")
    nums = [int(x) for x in m.groups()]
    if any(x > 255 for x in nums):
        raise ProtocolError(f"can't parse PASV reply {text!r}")
    host = ".".join(str(x) for x in nums[:4])
    port = (nums[4] * 256) + nums[5]
    return host, port


def format_port(host, port):
    """Return the "h1,h2,h3,h4,p1,p2" argument of a PORT command."""
    if host.startswith("::ffff:"):
        host = host[7:]
    return "%s,%d,%d" % (host.replace(".", ","), port // 256, port % 256)


def parse_port(arg):
    """Parse a PORT argument into (ip, port); ValueError if malformed."""
    addr = list(map(int, arg.split(",")))
    if len(addr) != 6:
        raise ValueError(arg)
    for x in addr[:4]:
        if not 0 <= x <= 255:
            raise ValueError(arg)
    ip = "%d.%d.%d.%d" % tuple(addr[:4])
    port = (addr[4] * 256) + addr[5]
    if not 0 <= port <= 65535:
        raise ValueError(arg)
    return ip, port
