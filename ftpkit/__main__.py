# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

"""
Serve an in-memory filesystem over FTP:

$ python3 -m ftpkit -m /pub
"""

import argparse
import codecs
import logging
import os
import sys

from . import __ver__
from .authorizers import DummyAuthorizer
from .exceptions import FilesystemError
from .filesystems import MemoryStore
from .handlers import FTPHandler
from .log import config_logging
from .servers import FTPServer
from .servers import ThreadedFTPServer
from .utils import hilite
from .utils import term_supports_colors

DEFAULT_PORT = 2121
CONCURRENCY = {
    "async": FTPServer,
    "multi-thread": ThreadedFTPServer,
}


class ColorHelpFormatter(argparse.HelpFormatter):
    """--help output with colored section titles and flags."""

    def start_section(self, heading):
        super().start_section(hilite(heading.capitalize(), "orange"))

    def _format_action_invocation(self, action):
        if not action.option_strings:
            name = self._metavar_formatter(action, action.dest)(1)[0]
            return hilite(name, "white")
        flags = [hilite(x, "lightblue") for x in action.option_strings]
        if action.nargs != 0:
            default = self._get_default_metavar_for_optional(action)
            metavar = self._format_args(action, default)
            flags[-1] = f"{flags[-1]} {hilite(metavar, 'green')}"
        return ", ".join(flags)


# --- argument types


def parse_encoding(value):
    try:
        codecs.lookup(value)
    except LookupError:
        msg = f"unknown encoding: {value!r}"
        raise argparse.ArgumentTypeError(msg) from None
    return value


def parse_port_range(value):
    """'FROM-TO' -> [FROM, ..., TO]"""
    lo, sep, hi = value.partition("-")
    if not (sep and lo.isdigit() and hi.isdigit()):
        msg = f"invalid port range: {value!r} (expected FROM-TO)"
        raise argparse.ArgumentTypeError(msg)
    lo, hi = int(lo), int(hi)
    if not 1 <= lo < hi <= 65535:
        msg = f"need 1 <= FROM < TO <= 65535 (got {lo}-{hi})"
        raise argparse.ArgumentTypeError(msg)
    return list(range(lo, hi + 1))


def parse_concurrency(value):
    try:
        return CONCURRENCY[value]
    except KeyError:
        choices = ", ".join(map(repr, CONCURRENCY))
        msg = f"invalid concurrency {value!r}; choose between: {choices}"
        raise argparse.ArgumentTypeError(msg) from None


def parse_virtual_path(value):
    if not value.startswith("/"):
        msg = f"path {value!r} must be absolute"
        raise argparse.ArgumentTypeError(msg)
    return value


# --- parser


def _add_main_options(group):
    group.add_argument(
        "-i",
        "--interface",
        metavar="ADDRESS",
        help="the address to listen on (default: all interfaces)",
    )
    group.add_argument(
        "-p",
        "--port",
        type=int,
        default=DEFAULT_PORT,
        help=f"the port to listen on (default: {DEFAULT_PORT})",
    )
    group.add_argument(
        "-u",
        "--username",
        help="the only user allowed in; disables anonymous access",
    )
    group.add_argument(
        "-P",
        "--password",
        help="the password of --username",
    )
    group.add_argument(
        "-m",
        "--mkdir",
        type=parse_virtual_path,
        action="append",
        default=[],
        metavar="PATH",
        help=(
            "create a directory before serving; repeat it to build a "
            "tree (e.g. -m /pub -m /pub/incoming)"
        ),
    )
    group.add_argument(
        "-n",
        "--nat-address",
        metavar="ADDRESS",
        help="the address advertised in PASV replies",
    )
    group.add_argument(
        "-r",
        "--range",
        type=parse_port_range,
        metavar="FROM-TO",
        help="the ports used for passive data connections",
    )
    group.add_argument(
        "-c",
        "--concurrency",
        type=parse_concurrency,
        default="async",
        help="'async' (default) or 'multi-thread'",
    )
    group.add_argument(
        "-D",
        "--debug",
        action="store_true",
        help="log at DEBUG level",
    )
    group.add_argument(
        "-V",
        "--version",
        action="version",
        version=f"ftpkit {__ver__}",
        help="print the version and exit",
    )


def _add_misc_options(group):
    group.add_argument(
        "--timeout",
        type=int,
        default=FTPHandler.timeout,
        help=f"idle timeout in seconds (default: {FTPHandler.timeout})",
    )
    group.add_argument(
        "--banner",
        default=FTPHandler.banner,
        help=f"the 220 greeting (default: {FTPHandler.banner!r})",
    )
    group.add_argument(
        "--permit-foreign-addresses",
        action="store_true",
        default=FTPHandler.permit_foreign_addresses,
        help="accept data connections from any address (FXP)",
    )
    group.add_argument(
        "--permit-privileged-ports",
        action="store_true",
        default=FTPHandler.permit_privileged_ports,
        help="accept PORT towards ports below 1024",
    )
    group.add_argument(
        "--encoding",
        type=parse_encoding,
        default="utf-8",
        help=f"control connection encoding (default: {FTPHandler.encoding})",
    )
    group.add_argument(
        "--max-cons",
        type=int,
        default=FTPServer.max_cons,
        help=f"connection limit (default: {FTPServer.max_cons})",
    )
    group.add_argument(
        "--max-cons-per-ip",
        type=int,
        default=FTPServer.max_cons_per_ip,
        help="connection limit per client address (default: unlimited)",
    )
    group.add_argument(
        "--max-login-attempts",
        type=int,
        default=FTPHandler.max_login_attempts,
        help=(
            "failed logins before disconnecting "
            f"(default: {FTPHandler.max_login_attempts})"
        ),
    )


def parse_args(args=None):
    formatter = argparse.HelpFormatter
    if term_supports_colors():
        formatter = ColorHelpFormatter
    parser = argparse.ArgumentParser(
        usage="python3 -m ftpkit [options]",
        description=main.__doc__,
        formatter_class=formatter,
    )
    _add_main_options(parser.add_argument_group("Main options"))
    _add_misc_options(parser.add_argument_group("Other options"))
    opts = parser.parse_args(args)
    if opts.username and not opts.password:
        parser.error("--username requires --password (-P)")
    return opts


# --- setup


def build_store(paths):
    """A MemoryStore holding the directories in *paths* (parents
    first).
    """
    store = MemoryStore()
    for path in paths:
        try:
            store.mkdir(path)
        except FilesystemError as err:
            sys.exit(f"can't create {path!r}: {err}")
    return store


def build_authorizer(opts):
    authorizer = DummyAuthorizer()
    if opts.username:
        authorizer.add_user(opts.username, opts.password)
    else:
        authorizer.add_anonymous()
    return authorizer


def configure_handler(handler, opts):
    handler.authorizer = build_authorizer(opts)
    handler.banner = opts.banner
    handler.encoding = opts.encoding
    handler.masquerade_address = opts.nat_address
    handler.max_login_attempts = opts.max_login_attempts
    handler.passive_ports = opts.range
    handler.permit_foreign_addresses = opts.permit_foreign_addresses
    handler.permit_privileged_ports = opts.permit_privileged_ports
    handler.timeout = opts.timeout
    handler.dtp_handler.timeout = opts.timeout
    return handler


def main(args=None):
    """Start a standalone FTP server serving an in-memory filesystem."""
    opts = parse_args(args=args)
    if opts.debug:
        config_logging(level=logging.DEBUG)

    # Windows listens on IPv6 only when no address is given
    if os.name == "nt" and not opts.interface:
        opts.interface = "0.0.0.0"

    store = build_store(opts.mkdir)
    handler = configure_handler(FTPHandler, opts)
    address = (opts.interface, opts.port)
    server = opts.concurrency(address, handler, store=store)
    server.max_cons = opts.max_cons
    server.max_cons_per_ip = opts.max_cons_per_ip

    # select() must time out now and then for CTRL+C to work on Windows
    timeout = 2 if os.name == "nt" else None
    try:
        server.serve_forever(timeout=timeout)
    finally:
        server.close_all()

    if args:  # unit tests inspect the server
        return server
    return None


if __name__ == "__main__":
    main()
