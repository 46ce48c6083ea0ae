"""Inspector port allocation for spawned worker processes."""

import logging
import threading
from collections.abc import Sequence

logger = logging.getLogger(__name__)

DEFAULT_BASE_PORT: int = 9230
# Used when explicit flags carry no port and no rewriting takes place.
DEFAULT_INSPECT_PORT: int = 9229
DEFAULT_INSPECT_HOST: str = "127.0.0.1"
INSPECT_FLAGS: tuple[str, ...] = ("--inspect", "--inspect-brk")


class InspectorFlag:
    """Parsed ``--inspect`` / ``--inspect-brk`` flag."""

    name: str
    host: str | None
    port: int | None

    def __init__(self, name: str, host: str | None, port: int | None) -> None:
        self.name = name
        self.host = host
        self.port = port

    @property
    def wait_for_client(self) -> bool:
        """Report whether the flag asks the child to pause until a debugger attaches."""
        return self.name == "--inspect-brk"

    def format(self) -> str:
        """Render the flag back to its command-line form."""
        if self.port is None:
            return self.name
        if self.host is None:
            return f"{self.name}={self.port}"
        return f"{self.name}={self.host}:{self.port}"


def parse_inspector_flag(flag: str) -> InspectorFlag | None:
    """Parse one execution flag as an inspector flag.

    :param flag: Raw execution flag.
    :returns: Parsed flag, or ``None`` when ``flag`` is not an inspector flag.
    :raises ValueError: If the flag is an inspector flag with an unparseable value.
    """
    name, separator, value = flag.partition("=")
    if name not in INSPECT_FLAGS:
        return None
    if separator == "":
        return InspectorFlag(name, None, None)

    host: str | None = None
    port_text: str = value
    if ":" in value:
        host, _, port_text = value.rpartition(":")
        if len(host) == 0:
            raise ValueError(f"Empty inspector host in {flag!r}")
    if port_text.isdigit() is False:
        raise ValueError(f"Inspector port must be numeric in {flag!r}")
    return InspectorFlag(name, host, int(port_text))


class DebugPortAllocator:
    """Hand out inspector ports that do not collide across spawned workers.

    An explicit port ``P`` on the inherited flag maps to ``P + 1`` for the
    child. A flag without a port takes the next value of a counter that starts
    at ``base_port`` and only ever grows. One allocator is shared by every
    process transport of the host process.
    """

    _base_port: int
    _next_port: int
    _lock: threading.Lock

    def __init__(self, base_port: int = DEFAULT_BASE_PORT) -> None:
        """Initialize the allocator.

        :param base_port: First port handed out for flags without a port.
        """
        self._base_port = base_port
        self._next_port = base_port
        self._lock = threading.Lock()

    @property
    def base_port(self) -> int:
        return self._base_port

    @property
    def next_port(self) -> int:
        """Return the port the next counter-based allocation would yield."""
        with self._lock:
            return self._next_port

    def allocate(self, explicit_port: int | None = None) -> int:
        """Allocate one inspector port.

        :param explicit_port: Port carried by the inherited flag, if any.
        :returns: Port for the child process.
        """
        if explicit_port is not None:
            return explicit_port + 1
        with self._lock:
            port: int = self._next_port
            self._next_port += 1
        return port

    def rewrite_exec_argv(self, exec_argv: Sequence[str]) -> list[str]:
        """Give every inspector flag in ``exec_argv`` a port for a new child.

        The shared counter advances at most once per call, so several
        port-less inspector flags in one command line share one port.

        :param exec_argv: Inherited execution flags.
        :returns: Rewritten execution flags.
        """
        rewritten: list[str] = []
        counter_port: int | None = None
        for flag in exec_argv:
            try:
                parsed: InspectorFlag | None = parse_inspector_flag(flag)
            except ValueError as exc:
                logger.warning("Passing inspector flag through unmodified: %s", exc)
                rewritten.append(flag)
                continue

            if parsed is None:
                rewritten.append(flag)
                continue

            if parsed.port is not None:
                parsed.port = self.allocate(parsed.port)
            else:
                if counter_port is None:
                    counter_port = self.allocate()
                parsed.port = counter_port
            rewritten.append(parsed.format())
        return rewritten

    def reset(self) -> None:
        """Restore the counter to its base port.

        Only meant for test isolation; resetting while workers are alive can
        hand out ports that are already in use.
        """
        with self._lock:
            self._next_port = self._base_port


_DEFAULT_ALLOCATOR: DebugPortAllocator = DebugPortAllocator()


def default_port_allocator() -> DebugPortAllocator:
    """Return the allocator shared by all process transports of this host process."""
    return _DEFAULT_ALLOCATOR
