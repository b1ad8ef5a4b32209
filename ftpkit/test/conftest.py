# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

"""
pytest hooks shared by the whole suite.

Every test is wrapped by a fixture comparing threads and file
descriptors before and after it runs, and checking that the global
IOLoop was left empty. Servers, clients and data channels which
outlive their test are reported as ResourceWarning.
"""

import threading
import warnings

import psutil
import pytest

from ftpkit.ioloop import IOLoop

from . import POSIX

# turn leak warnings into errors
FAIL = False
this_proc = psutil.Process()


def snapshot():
    snap = {"threads": set(threading.enumerate())}
    if POSIX:
        snap["num_fds"] = this_proc.num_fds()
    return snap


def report(msg):
    if FAIL:
        raise RuntimeError(msg)
    warnings.warn(msg, ResourceWarning, stacklevel=3)


def check_leaks(nodeid, before):
    after = snapshot()
    new_threads = after["threads"] - before["threads"]
    if new_threads:
        report(f"{nodeid!r} left threads behind: {new_threads!r}")
    if "num_fds" in before and after["num_fds"] > before["num_fds"]:
        report(
            f"{nodeid!r} left fds behind: before={before['num_fds']!r}, "
            f"after={after['num_fds']!r}"
        )


def check_ioloop():
    # IOLoop.instance() would create one: peek instead
    inst = IOLoop._instance
    if inst is None:
        return
    if inst.socket_map:
        report(f"unclosed ioloop socket map {inst.socket_map}")
    if inst.sched._tasks:
        report(f"unclosed ioloop tasks {inst.sched._tasks}")


@pytest.fixture(autouse=True)
def no_leaks(request):
    before = snapshot()
    yield
    # a failed test explains itself
    if not request.session.testsfailed:
        check_leaks(request.node.nodeid, before)
    check_ioloop()
