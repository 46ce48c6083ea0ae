"""Shared fixtures for the offload test suite."""

import threading
from collections.abc import Callable
from collections.abc import Iterator
from pathlib import Path

import pytest

from offload import WorkerHandle
from offload import reset_port_counter
from offload import set_config
from offload.config import reset_config

FIXTURES_DIR: Path = Path(__file__).parent / "fixtures"
EVENT_NAMES: tuple[str, ...] = ("message", "error", "progress", "done", "exit")
WAIT_SECONDS: float = 15.0


class EventRecorder:
    """Record every event a worker handle emits, in delivery order."""

    events: list[tuple[str, tuple[object, ...]]]
    _condition: threading.Condition

    def __init__(self, handle: WorkerHandle) -> None:
        """Subscribe to every channel of ``handle``.

        :param handle: Worker handle to observe.
        """
        self.events = []
        self._condition = threading.Condition()
        for name in EVENT_NAMES:
            handle.on(name, self._recorder(name))

    def _recorder(self, name: str) -> Callable[..., None]:
        def record(*args: object) -> None:
            with self._condition:
                self.events.append((name, args))
                self._condition.notify_all()

        return record

    def of(self, name: str) -> list[tuple[object, ...]]:
        """Return the arguments of every recorded event named ``name``."""
        with self._condition:
            return [args for event_name, args in self.events if event_name == name]

    def names(self) -> list[str]:
        with self._condition:
            return [event_name for event_name, _args in self.events]

    def wait_for(self, name: str, count: int = 1, timeout: float = WAIT_SECONDS) -> bool:
        """Block until ``count`` events named ``name`` were recorded.

        :param name: Event name.
        :param count: Number of events to wait for.
        :param timeout: Maximum wait in seconds.
        :returns: ``True`` when the events arrived in time.
        """
        with self._condition:
            return self._condition.wait_for(
                lambda: sum(1 for event_name, _args in self.events if event_name == name) >= count,
                timeout=timeout,
            )


@pytest.fixture(autouse=True)
def _isolated_config() -> Iterator[None]:
    """Point script base paths at the fixtures and reset shared state.

    :yields: Control to the active test.
    """
    reset_config()
    reset_port_counter()
    set_config({"basepath": {"process": str(FIXTURES_DIR), "thread": str(FIXTURES_DIR)}})
    yield
    reset_config()
    reset_port_counter()


@pytest.fixture
def recorder() -> Callable[[WorkerHandle], EventRecorder]:
    """Return a factory attaching an :class:`EventRecorder` to a handle."""
    return EventRecorder


@pytest.fixture
def handles() -> Iterator[list[WorkerHandle]]:
    """Collect handles created by a test and kill them afterwards.

    :yields: Mutable list the test appends its handles to.
    """
    created: list[WorkerHandle] = []
    yield created
    for handle in created:
        handle.kill()
