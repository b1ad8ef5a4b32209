# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

from .control import Command  # noqa: F401
from .control import FTPClient  # noqa: F401
from .data import DataChannel  # noqa: F401
from .data import DataConnection  # noqa: F401
from .transfer import StoreTransfer  # noqa: F401
from .transfer import TransferSession  # noqa: F401
from .transfer import as_producer  # noqa: F401
from .transfer import as_sink  # noqa: F401
