# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

from .control import AuthCapability  # noqa: F401
from .control import Capability  # noqa: F401
from .control import FTPHandler  # noqa: F401
from .control import TransferPrepCapability  # noqa: F401
from .control import TypeCapability  # noqa: F401
from .control import proto_cmds  # noqa: F401
from .data import DTPHandler  # noqa: F401
from .dispatchers import ActiveDTP  # noqa: F401
from .dispatchers import PassiveDTP  # noqa: F401
