"""Public package API for offload."""

from offload.api import reset_port_counter
from offload.api import spawn
from offload.config import get_config
from offload.config import set_config
from offload.errors import OffloadConfigError
from offload.errors import OffloadError
from offload.errors import OffloadProtocolError
from offload.errors import OffloadTaskError
from offload.errors import OffloadTransportError
from offload.errors import WorkerTerminatedError
from offload.handle import PromiseBridge
from offload.handle import WorkerHandle
from offload.ports import DebugPortAllocator

__all__: list[str] = [
    "DebugPortAllocator",
    "OffloadConfigError",
    "OffloadError",
    "OffloadProtocolError",
    "OffloadTaskError",
    "OffloadTransportError",
    "PromiseBridge",
    "WorkerHandle",
    "WorkerTerminatedError",
    "get_config",
    "reset_port_counter",
    "set_config",
    "spawn",
]
