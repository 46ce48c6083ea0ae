"""Caller-facing worker handle."""

import ast
import inspect
import itertools
import logging
import os
import textwrap
import threading
from collections.abc import Callable
from collections.abc import Sequence
from concurrent.futures import Future
from typing import Literal

from offload import protocol
from offload.config import default_transport
from offload.config import resolve_script_path
from offload.errors import OffloadTaskError
from offload.errors import OffloadTransportError
from offload.errors import WorkerTerminatedError
from offload.events import Callback
from offload.events import Channel
from offload.events import WorkerEvents
from offload.ports import DebugPortAllocator
from offload.protocol import Envelope
from offload.transport import Transport
from offload.transport import create_transport

logger = logging.getLogger(__name__)

WorkerState = Literal["idle", "running", "terminated"]
STATE_IDLE: WorkerState = "idle"
STATE_RUNNING: WorkerState = "running"
STATE_TERMINATED: WorkerState = "terminated"

Task = Callable[..., object] | str | os.PathLike
Outcome = tuple[Literal["message", "error"], object]

_WORKER_IDS = itertools.count(1)


def function_source(task: Callable[..., object]) -> tuple[str, str]:
    """Extract shippable source for a task function.

    Decorators are dropped; the function must not rely on closure variables
    or on names imported by its defining module.

    :param task: Function defined with ``def`` or ``async def``.
    :returns: Tuple of ``(source, function_name)``.
    :raises TypeError: If ``task`` is not a plain function.
    :raises ValueError: If ``task`` is a lambda or its source is unavailable.
    """
    if inspect.isfunction(task) is False:
        raise TypeError(f"Task must be a function, got {type(task).__name__}")
    if task.__name__ == "<lambda>":
        raise ValueError("Lambda tasks cannot be shipped to a worker; define the task with def")

    try:
        raw_source: str = inspect.getsource(task)
    except (OSError, TypeError) as exc:
        raise ValueError(f"Cannot read the source of task {task.__qualname__}") from exc

    tree: ast.Module = ast.parse(textwrap.dedent(raw_source))
    for node in tree.body:
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)) is True:
            node.decorator_list = []  # type: ignore[union-attr]
            return ast.unparse(node), node.name  # type: ignore[union-attr]
    raise ValueError(f"Cannot locate the definition of task {task.__qualname__}")


class PromiseBridge:
    """Settle one future from the first outcome of a multi-shot event stream."""

    future: "Future[object]"
    _lock: threading.Lock
    _settled: bool

    def __init__(self) -> None:
        self.future = Future()
        # A running future cannot be cancelled; kill() is the cancellation primitive.
        self.future.set_running_or_notify_cancel()
        self._lock = threading.Lock()
        self._settled = False

    @property
    def settled(self) -> bool:
        with self._lock:
            return self._settled

    def resolve(self, value: object) -> bool:
        """Resolve the future unless it already settled.

        :param value: Result value.
        :returns: ``True`` when this call settled the future.
        """
        with self._lock:
            if self._settled is True:
                return False
            self._settled = True
        self.future.set_result(value)
        return True

    def reject(self, error: BaseException) -> bool:
        """Reject the future unless it already settled.

        :param error: Exception to set.
        :returns: ``True`` when this call settled the future.
        """
        with self._lock:
            if self._settled is True:
                return False
            self._settled = True
        self.future.set_exception(error)
        return True

    def settle(self, outcome: Outcome) -> bool:
        """Settle from a recorded worker outcome.

        :param outcome: ``("message", values)`` or ``("error", exception)``.
        :returns: ``True`` when this call settled the future.
        """
        kind, value = outcome
        if kind == "error":
            return self.reject(value)  # type: ignore[arg-type]
        values: tuple[object, ...] = value  # type: ignore[assignment]
        if len(values) == 0:
            return self.resolve(None)
        if len(values) == 1:
            return self.resolve(values[0])
        return self.resolve(values)


class WorkerHandle:
    """Own one background execution context and expose it as events.

    The transport is created and started together with the handle and is
    reused by every :meth:`run`; :meth:`kill` ends it for good.
    """

    worker_id: int
    events: WorkerEvents
    transport: Transport
    _state: WorkerState
    _task: Task | None
    _lock: threading.RLock
    _outcome: Outcome | None
    _bridge: PromiseBridge | None
    _exited: bool

    def __init__(
        self,
        task: Task | None = None,
        args: Sequence[object] | None = None,
        exec_argv: Sequence[str] | None = None,
        transport: str | None = None,
        port_allocator: DebugPortAllocator | None = None,
    ) -> None:
        """Initialize the handle and start its transport.

        :param task: Optional task assigned right away.
        :param args: Process-only arguments exposed to the task as ``sys.argv[1:]``.
        :param exec_argv: Process-only execution flags replacing the inherited ones.
        :param transport: ``process`` or ``thread``; the configured default when omitted.
        :param port_allocator: Inspector port allocator for process transports.

        A background context that fails to start is reported through the
        ``error`` and ``exit`` events; ``task`` is then not assigned.
        """
        self.worker_id = next(_WORKER_IDS)
        self.events = WorkerEvents()
        self._state = STATE_IDLE
        self._task = None
        self._lock = threading.RLock()
        self._outcome = None
        self._bridge = None
        self._exited = False

        transport_kind: str = default_transport() if transport is None else transport
        self.transport = create_transport(
            transport_kind,
            script_args=args,
            exec_argv=exec_argv,
            port_allocator=port_allocator,
        )
        self.transport.on_envelope = self._handle_envelope
        self.transport.start()
        logger.debug("Spawned worker %s on %s transport", self.worker_id, transport_kind)

        if task is not None and self.transport.is_terminated is False:
            self.run(task)

    def __repr__(self) -> str:
        return f"<WorkerHandle id={self.worker_id} transport={self.transport.kind} state={self.state}>"

    def __enter__(self) -> "WorkerHandle":
        return self

    def __exit__(self, exc_type: object, exc_value: object, exc_traceback: object) -> None:
        self.kill()

    @property
    def state(self) -> WorkerState:
        with self._lock:
            return self._state

    @property
    def task(self) -> Task | None:
        with self._lock:
            return self._task

    @property
    def is_terminated(self) -> bool:
        return self.state == STATE_TERMINATED

    def _require_usable(self) -> None:
        if self._state == STATE_TERMINATED or self.transport.is_terminated is True:
            raise WorkerTerminatedError(f"Worker {self.worker_id} has been terminated")

    def on(self, name: str, callback: Callback) -> "WorkerHandle":
        """Subscribe to a worker event.

        :param name: ``message``, ``error``, ``progress``, ``done`` or ``exit``.
        :param callback: Subscriber.
        :returns: This handle.
        """
        self.events.channel(name).subscribe(callback)
        return self

    def once(self, name: str, callback: Callback) -> "WorkerHandle":
        """Subscribe to the next emission of a worker event only.

        :param name: Event name, as for :meth:`on`.
        :param callback: Subscriber dropped after its first invocation.
        :returns: This handle.
        """
        self.events.channel(name).subscribe(callback, once=True)
        return self

    def off(self, name: str, callback: Callback) -> "WorkerHandle":
        """Remove a subscriber added with :meth:`on` or :meth:`once`.

        :param name: Event name.
        :param callback: Subscriber to remove.
        :returns: This handle.
        """
        self.events.channel(name).unsubscribe(callback)
        return self

    def run(self, task: Task, import_scripts: Sequence[str] | None = None) -> "WorkerHandle":
        """Assign new code to the background context.

        :param task: Function, or path of a script defining a ``task`` callable.
        :param import_scripts: Helper scripts whose public names the task can use.
        :returns: This handle.
        :raises WorkerTerminatedError: If the worker was killed or crashed.
        :raises TypeError: If ``task`` is neither a function nor a path.
        """
        kind: str = self.transport.kind
        scripts: list[str] = []
        if import_scripts is not None:
            scripts = [resolve_script_path(os.fspath(script), kind) for script in import_scripts]

        envelope: Envelope
        if callable(task) is True:
            source, name = function_source(task)  # type: ignore[arg-type]
            envelope = protocol.run_code(source, name, scripts)
        elif isinstance(task, (str, os.PathLike)) is True:
            script_path: str = resolve_script_path(os.fspath(task), kind)  # type: ignore[arg-type]
            envelope = protocol.run_script(script_path, scripts)
        else:
            raise TypeError(f"Task must be a function or a script path, got {type(task).__name__}")

        with self._lock:
            self._require_usable()
        # The event dispatcher needs the handle lock while a write may block.
        self.transport.send(envelope)
        with self._lock:
            self._task = task
            if self._state != STATE_TERMINATED:
                self._state = STATE_RUNNING
        return self

    def send(self, *args: object, transfer_list: Sequence[object] | None = None) -> "WorkerHandle":
        """Push data to the current task.

        :param args: Positional arguments for the task.
        :param transfer_list: Buffers moved instead of copied (thread transport only).
        :returns: This handle.
        :raises WorkerTerminatedError: If the worker was killed or crashed.
        :raises TypeError: If the arguments cannot be serialized.
        """
        envelope: Envelope = protocol.data(args, transfer_list)
        with self._lock:
            self._require_usable()
            self._outcome = None
        self.transport.send(envelope)
        return self

    def kill(self) -> None:
        """Terminate the background context.

        ``exit`` is emitted once termination is confirmed; later calls do nothing.
        """
        with self._lock:
            if self._state == STATE_TERMINATED:
                return
            self._state = STATE_TERMINATED
        logger.debug("Killing worker %s", self.worker_id)
        self.transport.terminate()

    def promise(self) -> "Future[object]":
        """Return a future for the outcome of the current invocation.

        The future resolves with the first ``message`` (one value as is,
        several as a tuple, none as ``None``) or fails with the first
        ``error``. Outcomes arriving later are ignored.

        :returns: Future settled exactly once.
        """
        with self._lock:
            if self._outcome is not None:
                settled_bridge: PromiseBridge = PromiseBridge()
                settled_bridge.settle(self._outcome)
                return settled_bridge.future
            if self._bridge is None:
                self._bridge = PromiseBridge()
                if self._exited is True:
                    self._bridge.reject(WorkerTerminatedError(f"Worker {self.worker_id} has exited"))
            return self._bridge.future

    def _record_outcome(self, outcome: Outcome) -> None:
        with self._lock:
            if self._outcome is not None:
                return
            self._outcome = outcome
            bridge: PromiseBridge | None = self._bridge
            self._bridge = None
        if bridge is not None:
            bridge.settle(outcome)

    def _handle_envelope(self, envelope: Envelope) -> None:
        """Translate one inbound envelope into handle events."""
        kind: str = envelope.kind
        if kind == protocol.PROGRESS:
            self.events.progress.emit(envelope.payload["value"])
            return
        if kind in protocol.TERMINAL_KINDS:
            values: tuple[object, ...] = tuple(envelope.payload.get("values", []))  # type: ignore[arg-type]
            self.events.message.emit(*values)
            self.events.done.emit()
            self._record_outcome(("message", values))
            return
        if kind == protocol.ERROR:
            self._handle_error(envelope.payload)
            return
        if kind == protocol.EXIT:
            self._handle_exit()
            return
        logger.warning("Worker %s ignored envelope of kind %r", self.worker_id, kind)

    def _handle_error(self, payload: dict[str, object]) -> None:
        error: BaseException
        error_message: str = str(payload.get("message", ""))
        if payload.get("fatal") is True:
            with self._lock:
                self._state = STATE_TERMINATED
            error = OffloadTransportError(error_message)
        else:
            error = OffloadTaskError(
                str(payload.get("type", "Exception")),
                error_message,
                str(payload.get("stack", "")),
            )

        channel: Channel = self.events.error
        with self._lock:
            has_bridge: bool = self._bridge is not None
        if channel.subscriber_count == 0 and has_bridge is False:
            logger.error("Unhandled error in worker %s: %s", self.worker_id, error)
        channel.emit(error)
        self._record_outcome(("error", error))

    def _handle_exit(self) -> None:
        with self._lock:
            if self._exited is True:
                return
            self._exited = True
            self._state = STATE_TERMINATED
            bridge: PromiseBridge | None = self._bridge
            self._bridge = None
        logger.debug("Worker %s exited", self.worker_id)
        if bridge is not None:
            bridge.reject(WorkerTerminatedError(f"Worker {self.worker_id} exited before settling"))
        self.events.exit.emit()
