"""Task-side runtime executed inside every background context.

Spawned worker processes enter through ``python -m offload`` which calls
:func:`main`; thread workers drive :class:`TaskRunner` directly from their
background thread.
"""

import argparse
import asyncio
import builtins
import hashlib
import importlib.util
import inspect
import logging
import os
import pickle
import sys
import threading
import traceback
from collections.abc import Callable
from collections.abc import Sequence
from multiprocessing.connection import Connection
from types import ModuleType
from typing import Any

from offload import protocol
from offload.errors import OffloadProtocolError
from offload.protocol import Envelope

logger = logging.getLogger(__name__)

SCRIPT_TASK_ATTR: str = "task"
LOG_LEVEL_ENV: str = "OFFLOAD_LOG_LEVEL"

Emit = Callable[[Envelope], None]


def describe_exception(exc: BaseException) -> Envelope:
    """Build an ``error`` envelope for one exception.

    :param exc: Exception raised by task code.
    :returns: Error envelope carrying type name, message and traceback.
    """
    stack: str = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return protocol.error(type(exc).__name__, str(exc), stack)


class _Invocation:
    """Outcome latch for the processing of one ``data`` envelope.

    Once an invocation failed, later terminal and progress calls are dropped.
    Once it completed, later failures are only logged and progress is dropped.
    """

    _emit: Emit
    _lock: threading.Lock
    completed: bool
    failed: bool

    def __init__(self, emit: Emit) -> None:
        self._emit = emit
        self._lock = threading.Lock()
        self.completed = False
        self.failed = False

    def complete(self, values: Sequence[object], transfer_list: Sequence[object] | None = None) -> None:
        """Send one terminal result.

        :param values: Result values.
        :param transfer_list: Buffers moved to the host instead of copied.
        """
        with self._lock:
            if self.failed is True:
                logger.debug("Dropping result of an invocation that already failed")
                return
            if transfer_list is not None and len(transfer_list) > 0:
                protocol.validate_transfer_list(transfer_list)
            envelope: Envelope
            if len(values) == 0 and (transfer_list is None or len(transfer_list) == 0):
                envelope = protocol.done()
            else:
                envelope = protocol.message(values, transfer_list)
            try:
                self._emit(envelope)
            except TypeError as exc:
                self._fail_locked(exc)
                return
            self.completed = True

    def report_progress(self, value: object) -> None:
        """Send one progress update.

        :param value: Progress fraction.
        :raises TypeError: If ``value`` is not a number.
        """
        is_number: bool = isinstance(value, (int, float)) is True and isinstance(value, bool) is False
        if is_number is False:
            raise TypeError(f"progress expects a number, got {type(value).__name__}")
        with self._lock:
            if self.failed is True or self.completed is True:
                logger.debug("Dropping progress %r reported after the invocation settled", value)
                return
            self._emit(protocol.progress(value))  # type: ignore[arg-type]

    def fail(self, exc: BaseException) -> None:
        """Report an exception raised by the task.

        :param exc: Exception to report.
        """
        with self._lock:
            self._fail_locked(exc)

    def _fail_locked(self, exc: BaseException) -> None:
        if self.failed is True or self.completed is True:
            logger.warning("Task raised after its invocation settled: %s: %s", type(exc).__name__, exc)
            return
        self.failed = True
        self._emit(describe_exception(exc))


class DoneCallback:
    """Terminal call handed to tasks as ``done``."""

    _invocation: _Invocation

    def __init__(self, invocation: _Invocation) -> None:
        self._invocation = invocation

    def __call__(self, *values: object) -> None:
        self._invocation.complete(values)

    def transfer(self, *values: object, transfer_list: Sequence[object]) -> None:
        """Send a terminal result and move the listed buffers to the host.

        :param values: Result values.
        :param transfer_list: Buffers whose ownership moves to the host.
        """
        self._invocation.complete(values, transfer_list)


class ProgressCallback:
    """Progress call handed to tasks as ``progress``."""

    _invocation: _Invocation

    def __init__(self, invocation: _Invocation) -> None:
        self._invocation = invocation

    def __call__(self, value: float) -> None:
        self._invocation.report_progress(value)


def _load_module(path: str, injected: dict[str, object] | None = None) -> ModuleType:
    """Execute one script file as a fresh module.

    :param path: Script file path.
    :param injected: Names placed into the module globals before it runs.
    :returns: Executed module.
    :raises FileNotFoundError: If ``path`` does not exist.
    :raises ImportError: If no loader can be created for ``path``.
    """
    if os.path.isfile(path) is False:
        raise FileNotFoundError(f"Script not found: {path}")
    digest: str = hashlib.sha1(path.encode("utf-8")).hexdigest()[:12]
    module_name: str = f"offload_script_{digest}"
    spec = importlib.util.spec_from_file_location(module_name, path)
    if spec is None or spec.loader is None:
        raise ImportError(f"Cannot load script: {path}")
    module: ModuleType = importlib.util.module_from_spec(spec)
    if injected is not None:
        module.__dict__.update(injected)
    spec.loader.exec_module(module)
    return module


def _public_names(module: ModuleType) -> dict[str, object]:
    """Collect the names a helper script exports.

    :param module: Executed helper module.
    :returns: ``__all__`` entries when defined, else every name without a leading underscore.
    """
    exported: object = getattr(module, "__all__", None)
    names: list[str]
    if isinstance(exported, (list, tuple)) is True:
        names = [name for name in exported if isinstance(name, str) is True]  # type: ignore[union-attr]
    else:
        names = [name for name in vars(module) if name.startswith("_") is False]
    return {name: getattr(module, name) for name in names}


def _callback_kwargs(task: Callable[..., object], done: DoneCallback, progress: ProgressCallback) -> dict[str, object]:
    """Select the task-side callbacks a task declares.

    :param task: Task callable.
    :param done: Terminal callback.
    :param progress: Progress callback.
    :returns: Keyword arguments to pass to the task.
    """
    try:
        signature: inspect.Signature = inspect.signature(task)
    except (TypeError, ValueError):
        return {}

    parameters = signature.parameters
    accepts_any_keyword: bool = any(
        parameter.kind is inspect.Parameter.VAR_KEYWORD for parameter in parameters.values()
    )
    kwargs: dict[str, object] = {}
    if "done" in parameters or accepts_any_keyword is True:
        kwargs["done"] = done
    if "progress" in parameters or accepts_any_keyword is True:
        kwargs["progress"] = progress
    return kwargs


async def _await_result(awaitable: Any) -> object:
    return await awaitable


class TaskRunner:
    """Hold the current task of one background context and execute envelopes."""

    _emit: Emit
    _task: Callable[..., object] | None
    _current: _Invocation | None
    _lock: threading.Lock

    def __init__(self, emit: Emit) -> None:
        """Initialize a runner.

        :param emit: Callable delivering envelopes to the host. It raises
            ``TypeError`` when a payload cannot be serialized.
        """
        self._emit = emit
        self._task = None
        self._current = None
        self._lock = threading.Lock()

    @property
    def task(self) -> Callable[..., object] | None:
        return self._task

    def handle(self, envelope: Envelope) -> None:
        """Execute one host envelope.

        :param envelope: Validated host-to-background envelope.
        """
        kind: str = envelope.kind
        if kind == protocol.DATA:
            self._invoke(envelope.payload["args"])  # type: ignore[arg-type]
            return

        try:
            if kind == protocol.RUN_CODE:
                self._task = self._load_code(
                    envelope.payload["source"],  # type: ignore[arg-type]
                    envelope.payload["name"],  # type: ignore[arg-type]
                    envelope.payload["scripts"],  # type: ignore[arg-type]
                )
                return
            if kind == protocol.RUN_SCRIPT:
                self._task = self._load_script(envelope.payload["path"], [])  # type: ignore[arg-type]
                return
            if kind == protocol.RUN_SCRIPT_WITH_IMPORTS:
                self._task = self._load_script(
                    envelope.payload["path"],  # type: ignore[arg-type]
                    envelope.payload["scripts"],  # type: ignore[arg-type]
                )
                return
        except Exception as exc:
            self._task = None
            self._emit(describe_exception(exc))
            return

        logger.warning("Discarding envelope of kind %r sent to a background context", kind)

    def report_undeliverable(self, exc: BaseException) -> None:
        """Report data that reached the background context but could not be decoded.

        :param exc: Decoding failure.
        """
        self._emit(describe_exception(exc))

    def report_uncaught(self, exc: BaseException) -> None:
        """Attribute an exception raised outside the task call to the current invocation.

        :param exc: Uncaught exception, such as one raised in a thread the task started.
        """
        with self._lock:
            current: _Invocation | None = self._current
        if current is None:
            self._emit(describe_exception(exc))
            return
        current.fail(exc)

    def _load_imports(self, scripts: Sequence[str]) -> dict[str, object]:
        namespace: dict[str, object] = {}
        for script in scripts:
            module: ModuleType = _load_module(script, dict(namespace))
            namespace.update(_public_names(module))
        return namespace

    def _load_code(self, source: str, name: str, scripts: Sequence[str]) -> Callable[..., object]:
        """Compile a function from source.

        :param source: Function source.
        :param name: Name the function binds to.
        :param scripts: Helper scripts whose names become globals of the function.
        :returns: Task callable.
        :raises TypeError: If ``name`` is not bound to a callable after execution.
        """
        namespace: dict[str, object] = self._load_imports(scripts)
        namespace["__name__"] = "__offload_task__"
        namespace["__builtins__"] = builtins
        code = compile(source, f"<offload task {name}>", "exec")
        exec(code, namespace)
        task: object = namespace.get(name)
        if callable(task) is False:
            raise TypeError(f"Task source did not define a callable named {name!r}")
        return task  # type: ignore[return-value]

    def _load_script(self, path: str, scripts: Sequence[str]) -> Callable[..., object]:
        """Load a script module and return its ``task`` callable.

        :param path: Script path.
        :param scripts: Helper scripts loaded first.
        :returns: Task callable.
        :raises TypeError: If the script does not define a callable ``task``.
        """
        injected: dict[str, object] = self._load_imports(scripts)
        module: ModuleType = _load_module(path, injected)
        task: object = getattr(module, SCRIPT_TASK_ATTR, None)
        if callable(task) is False:
            raise TypeError(f"Script {path} must define a callable named {SCRIPT_TASK_ATTR!r}")
        return task  # type: ignore[return-value]

    def _invoke(self, args: Sequence[object]) -> None:
        """Run the current task for one ``data`` envelope.

        :param args: Positional arguments sent by the host.
        """
        invocation: _Invocation = _Invocation(self._emit)
        with self._lock:
            self._current = invocation

        task: Callable[..., object] | None = self._task
        if task is None:
            invocation.fail(RuntimeError("No task assigned; call run() before send()"))
            return

        done: DoneCallback = DoneCallback(invocation)
        progress: ProgressCallback = ProgressCallback(invocation)
        kwargs: dict[str, object] = _callback_kwargs(task, done, progress)
        declares_done: bool = "done" in kwargs

        is_awaitable: bool = False
        try:
            result: object = task(*args, **kwargs)
            is_awaitable = inspect.isawaitable(result)
            if is_awaitable is True:
                result = self._run_awaitable(result, invocation)
        except Exception as exc:
            invocation.fail(exc)
            return

        if is_awaitable is False and declares_done is True:
            return
        if invocation.completed is True or invocation.failed is True:
            return
        invocation.complete(() if result is None else (result,))

    def _run_awaitable(self, awaitable: object, invocation: _Invocation) -> object:
        """Drive an awaitable returned by a task to completion.

        Exceptions of tasks the coroutine left unobserved fail the invocation.

        :param awaitable: Awaitable returned by the task.
        :param invocation: Invocation the awaitable belongs to.
        :returns: Awaited result.
        """

        def on_loop_exception(_loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
            exc: object = context.get("exception")
            if isinstance(exc, BaseException) is True:
                invocation.fail(exc)  # type: ignore[arg-type]
                return
            logger.warning("Task event loop reported: %s", context.get("message"))

        loop: asyncio.AbstractEventLoop = asyncio.new_event_loop()
        loop.set_exception_handler(on_loop_exception)
        try:
            return loop.run_until_complete(_await_result(awaitable))
        finally:
            try:
                loop.run_until_complete(loop.shutdown_asyncgens())
            finally:
                loop.close()


class _ConnectionEmitter:
    """Serialize envelopes onto the pipe back to the host."""

    _connection: Connection
    _lock: threading.Lock

    def __init__(self, connection: Connection) -> None:
        self._connection = connection
        self._lock = threading.Lock()

    def __call__(self, envelope: Envelope) -> None:
        try:
            payload: bytes = pickle.dumps(envelope.to_wire(), protocol=pickle.HIGHEST_PROTOCOL)
        except (pickle.PicklingError, AttributeError) as exc:
            raise TypeError(f"Could not serialize {envelope.kind} payload: {exc}") from exc
        with self._lock:
            try:
                self._connection.send_bytes(payload)
            except (BrokenPipeError, EOFError, OSError):
                logger.debug("Host channel closed; dropping %s envelope", envelope.kind)


def serve(connection: Connection) -> None:
    """Run the background message loop of a worker process.

    :param connection: Duplex pipe end shared with the host.
    """
    emit: _ConnectionEmitter = _ConnectionEmitter(connection)
    runner: TaskRunner = TaskRunner(emit)

    def on_thread_exception(args: threading.ExceptHookArgs) -> None:
        if args.exc_value is None or isinstance(args.exc_value, Exception) is False:
            return
        runner.report_uncaught(args.exc_value)

    threading.excepthook = on_thread_exception

    while True:
        try:
            incoming: object = connection.recv()
        except (EOFError, OSError):
            break
        except (pickle.UnpicklingError, AttributeError, ImportError, ValueError) as exc:
            runner.report_undeliverable(exc)
            continue

        try:
            envelope: Envelope = Envelope.from_wire(incoming, protocol.HOST_KINDS)
        except OffloadProtocolError as exc:
            logger.warning("Discarding malformed envelope from host: %s", exc)
            continue
        runner.handle(envelope)

    try:
        connection.close()
    except OSError:
        pass


def _parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        prog="offload-worker",
        description="Background context entry point for offload process workers.",
    )
    parser.add_argument("--fd", type=int, required=True, help="Inherited pipe file descriptor.")
    parser.add_argument("args", nargs=argparse.REMAINDER, help="Arguments exposed to the task as sys.argv[1:].")
    return parser.parse_args(list(argv))


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point of spawned worker processes.

    :param argv: Command-line arguments without the program name.
    :returns: Process exit code.
    """
    if argv is None:
        argv = sys.argv[1:]
    options: argparse.Namespace = _parse_args(argv)
    task_args: list[str] = list(options.args)
    if len(task_args) > 0 and task_args[0] == "--":
        task_args = task_args[1:]

    level_name: str = os.environ.get(LOG_LEVEL_ENV, "WARNING").upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.WARNING),
        format="%(asctime)s %(levelname)s [offload-worker %(process)d] %(name)s: %(message)s",
        stream=sys.stderr,
    )

    sys.argv = ["offload-worker", *task_args]
    connection: Connection = Connection(options.fd)
    serve(connection)
    return 0
