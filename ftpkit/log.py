# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

"""
The "ftpkit" logger and the formatter installed on it when the
application did not configure logging itself (see config_logging()).

Applications embedding ftpkit normally call logging.basicConfig() (or
attach their own handlers) before serve_forever().
"""

import logging
import sys
import time

try:
    import curses
except ImportError:
    curses = None

from .utils import term_supports_colors

logger = logging.getLogger("ftpkit")

LEVEL = logging.INFO
PREFIX = "[%(levelname)1.1s %(asctime)s]"
TIME_FORMAT = "%Y-%m-%d %H:%M:%S"

# curses color numbers
_LEVEL_COLORS = {
    logging.DEBUG: 4,  # blue
    logging.INFO: 2,  # green
    logging.WARNING: 3,  # yellow
    logging.ERROR: 1,  # red
}


def _terminal_colors():
    """Map log levels to escape sequences, or return None if stderr
    is not a color terminal.
    """
    if curses is None or not term_supports_colors():
        return None
    curses.setupterm()
    setaf = curses.tigetstr("setaf") or curses.tigetstr("setf") or b""
    colors = {
        level: str(curses.tparm(setaf, num), "ascii")
        for level, num in _LEVEL_COLORS.items()
    }
    colors[None] = str(curses.tigetstr("sgr0"), "ascii")
    return colors


class LogFormatter(logging.Formatter):
    """One line per record prefixed by level and time, colored on a
    terminal. Continuation lines (tracebacks included) are indented.
    """

    PREFIX = PREFIX

    def __init__(self, *args, **kwargs):
        logging.Formatter.__init__(self, *args, **kwargs)
        self._colors = _terminal_colors()

    def _prefix(self, record):
        record.asctime = time.strftime(
            TIME_FORMAT, self.converter(record.created)
        )
        prefix = self.PREFIX % record.__dict__
        if self._colors:
            reset = self._colors[None]
            prefix = self._colors.get(record.levelno, reset) + prefix + reset
        return prefix

    def format(self, record):
        try:
            record.message = record.getMessage()
        except Exception as err:
            record.message = f"Bad message ({err!r}): {record.__dict__!r}"
        message = record.message
        if isinstance(message, bytes):
            message = repr(message)
        lines = [f"{self._prefix(record)} {message}"]
        if record.exc_info and not record.exc_text:
            record.exc_text = self.formatException(record.exc_info)
        if record.exc_text:
            lines = [lines[0].rstrip(), record.exc_text]
        return "\n".join(lines).replace("\n", "\n    ")


def debug(s, inst=None):
    """Log an internal event at DEBUG level, tagged with the object
    it concerns.
    """
    s = "[debug] " + s
    if inst is not None:
        s += f" ({inst!r})"
    logger.debug(s)


def config_logging(level=LEVEL, prefix=PREFIX, other_loggers=None):
    """Log to stderr with LogFormatter. Used when nobody else
    configured logging, or by the command line.
    """
    # skip the record attributes we never print
    logging._srcfile = None
    logging.logThreads = False
    logging.logMultiprocessing = False
    logging.logProcesses = False
    formatter = LogFormatter()
    formatter.PREFIX = prefix
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    for log in [logger, *(other_loggers or [])]:
        log.setLevel(level)
        log.addHandler(handler)
