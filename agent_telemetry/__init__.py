# Copyright (c) Microsoft. All rights reserved.

import importlib.metadata
from typing import Final

try:
    _version = importlib.metadata.version(__name__)
except importlib.metadata.PackageNotFoundError:
    _version = "0.0.0"  # Fallback for development mode
__version__: Final[str] = _version

from ._backends import *  # noqa: F403
from ._events import *  # noqa: F403
from ._hooks import *  # noqa: F403
from ._instrumentation import *  # noqa: F403
from ._logging import *  # noqa: F403
from ._meter_adapter import *  # noqa: F403
from ._metrics import *  # noqa: F403
from ._propagation import *  # noqa: F403
from ._span_lifecycle import *  # noqa: F403
from ._trace_tree import *  # noqa: F403
from ._tracer import *  # noqa: F403
from ._types import *  # noqa: F403
from .exceptions import *  # noqa: F403
from .observability import *  # noqa: F403
