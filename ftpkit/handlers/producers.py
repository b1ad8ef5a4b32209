# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

"""asynchat producers feeding the server data channel.

Each one answers more() with the next chunk and with b"" once it runs
dry, which is what async_chat.initiate_send() expects.
"""

import itertools

from ..exceptions import _FileReadWriteError

__all__ = ["BufferedIteratorProducer", "FileProducer"]


class FileProducer:
    """Streams a file opened by MemoryFS.open() (a snapshot of the
    node taken when RETR started). TYPE never alters the bytes.
    """

    buffer_size = 65536

    def __init__(self, file):
        self.file = file

    def more(self):
        try:
            return self.file.read(self.buffer_size)
        except OSError as err:
            raise _FileReadWriteError(err) from err


class BufferedIteratorProducer:
    """Joins up to `loops` lines of a listing generator per call, so
    that LIST on a large directory does not hog the IO loop.
    """

    loops = 20

    def __init__(self, iterator):
        self.iterator = iter(iterator)

    def more(self):
        return b"".join(itertools.islice(self.iterator, self.loops))
