# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

"""Small helpers shared by the CLI, the logger and the handlers."""

import functools
import os
import sys

__all__ = [
    "hilite",
    "memoize",
    "strerror",
    "term_supports_colors",
]

# ANSI SGR codes, by name.
COLORS = {
    None: "29",
    "green": "32",
    "grey": "37",
    "lightblue": "38;5;66",
    "orange": "38;5;208",
    "red": "91",
    "white": "97",
    "yellow": "93",
}


def memoize(fun):
    """Cache the return value of a function taking hashable arguments."""
    cache = {}

    @functools.wraps(fun)
    def wrapper(*args, **kwargs):
        key = (args, frozenset(kwargs.items()))
        if key not in cache:
            cache[key] = fun(*args, **kwargs)
        return cache[key]

    wrapper.cache_clear = cache.clear
    return wrapper


@memoize
def term_supports_colors():
    """True if both stdout and stderr are color-capable terminals."""
    if os.name == "nt":
        return False
    if not (sys.stdout.isatty() and sys.stderr.isatty()):
        return False
    try:
        import curses  # noqa: PLC0415

        curses.setupterm()
        return curses.tigetnum("colors") > 0
    except Exception:
        return False


def hilite(s, color=None, bold=False):  # pragma: no cover
    """Wrap *s* in ANSI escapes, or return it as is on a dumb terminal."""
    if not term_supports_colors():
        return s
    if color not in COLORS:
        choices = sorted(COLORS, key=str)
        msg = f"invalid color {color!r}; choose amongst {choices}"
        raise ValueError(msg)
    codes = [COLORS[color]]
    if bold:
        codes.append("1")
    return "\x1b[{}m{}\x1b[0m".format(";".join(codes), s)


def strerror(err):
    """A human readable message for *err*, preferring the errno text."""
    errno = getattr(err, "errno", None)
    if isinstance(err, OSError) and errno is not None:
        return os.strerror(errno)
    return str(err)
