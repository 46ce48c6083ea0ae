"""Transports carrying envelopes between a worker handle and its background context."""

import itertools
import logging
import multiprocessing
import os
import pickle
import queue
import subprocess
import sys
import threading
from collections.abc import Callable
from collections.abc import Sequence
from multiprocessing.connection import Connection

from offload import protocol
from offload.bootstrap import TaskRunner
from offload.config import TRANSPORT_PROCESS
from offload.config import TRANSPORT_THREAD
from offload.config import inherited_exec_argv
from offload.errors import OffloadProtocolError
from offload.errors import OffloadTransportError
from offload.errors import WorkerTerminatedError
from offload.ports import DEFAULT_INSPECT_HOST
from offload.ports import DEFAULT_INSPECT_PORT
from offload.ports import DebugPortAllocator
from offload.ports import InspectorFlag
from offload.ports import default_port_allocator
from offload.ports import parse_inspector_flag
from offload.protocol import Envelope

logger = logging.getLogger(__name__)

EnvelopeCallback = Callable[[Envelope], None]

_INBOUND_KINDS: frozenset[str] = protocol.WORKER_KINDS - {protocol.EXIT}
_STOP: object = object()
_TRANSPORT_IDS = itertools.count(1)


class Transport:
    """Capability interface shared by every transport.

    The owning handle sets :attr:`on_envelope`; inbound envelopes are
    delivered to it from one transport-owned thread, in arrival order.
    """

    kind: str = ""
    on_envelope: EnvelopeCallback | None
    _terminated: threading.Event
    _lock: threading.RLock

    def __init__(self) -> None:
        self.on_envelope = None
        self._terminated = threading.Event()
        self._lock = threading.RLock()

    @property
    def is_terminated(self) -> bool:
        return self._terminated.is_set()

    def start(self) -> None:
        raise NotImplementedError

    def send(self, envelope: Envelope) -> None:
        raise NotImplementedError

    def terminate(self) -> None:
        raise NotImplementedError

    def _require_alive(self) -> None:
        if self._terminated.is_set() is True:
            raise WorkerTerminatedError("Worker has been terminated")

    def _deliver(self, envelope: Envelope) -> None:
        callback: EnvelopeCallback | None = self.on_envelope
        if callback is None:
            logger.debug("No receiver attached; dropping %s envelope", envelope.kind)
            return
        try:
            callback(envelope)
        except Exception:
            logger.exception("Receiver failed while handling %s envelope", envelope.kind)


def build_command(exec_argv: Sequence[str], fd: int, script_args: Sequence[str]) -> list[str]:
    """Build the command line of a worker process.

    Inspector flags become a ``debugpy`` launcher prefix; every other flag is
    handed to the interpreter unchanged.

    :param exec_argv: Execution flags after port rewriting.
    :param fd: Pipe descriptor inherited by the child.
    :param script_args: Arguments the task sees as ``sys.argv[1:]``.
    :returns: Command line for ``subprocess.Popen``.
    """
    interpreter_flags: list[str] = []
    inspector: InspectorFlag | None = None
    for flag in exec_argv:
        try:
            parsed: InspectorFlag | None = parse_inspector_flag(flag)
        except ValueError:
            parsed = None
        if parsed is None:
            interpreter_flags.append(flag)
            continue
        inspector = parsed

    command: list[str] = [sys.executable, *interpreter_flags]
    if inspector is not None:
        host: str = DEFAULT_INSPECT_HOST if inspector.host is None else inspector.host
        port: int = DEFAULT_INSPECT_PORT if inspector.port is None else inspector.port
        command.extend(["-m", "debugpy", "--listen", f"{host}:{port}"])
        if inspector.wait_for_client is True:
            command.append("--wait-for-client")
    command.extend(["-m", "offload", "--fd", str(fd), "--"])
    command.extend(str(arg) for arg in script_args)
    return command


def _child_environment() -> dict[str, str]:
    """Return the environment of a worker process.

    The directory holding the ``offload`` package is put first on
    ``PYTHONPATH`` so that uninstalled checkouts work too.
    """
    environment: dict[str, str] = dict(os.environ)
    package_root: str = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    existing: str = environment.get("PYTHONPATH", "")
    if existing == "":
        environment["PYTHONPATH"] = package_root
    else:
        environment["PYTHONPATH"] = os.pathsep.join([package_root, existing])
    return environment


class ProcessTransport(Transport):
    """Run the background context in a child interpreter process."""

    kind: str = TRANSPORT_PROCESS
    process: subprocess.Popen | None
    exec_argv: list[str]
    _script_args: list[str]
    _explicit_exec_argv: list[str] | None
    _port_allocator: DebugPortAllocator
    _connection: Connection | None
    _reader: threading.Thread | None
    _send_lock: threading.Lock

    def __init__(
        self,
        script_args: Sequence[object] | None = None,
        exec_argv: Sequence[str] | None = None,
        port_allocator: DebugPortAllocator | None = None,
    ) -> None:
        """Initialize a process transport.

        :param script_args: Arguments exposed to the task as ``sys.argv[1:]``.
        :param exec_argv: Execution flags used verbatim instead of the inherited ones.
        :param port_allocator: Allocator for inspector ports; the process-wide one by default.
        """
        super().__init__()
        self._script_args = [] if script_args is None else [str(arg) for arg in script_args]
        self._explicit_exec_argv = None if exec_argv is None else list(exec_argv)
        self._port_allocator = default_port_allocator() if port_allocator is None else port_allocator
        self.exec_argv = []
        self.process = None
        self._connection = None
        self._reader = None
        self._send_lock = threading.Lock()

    def _resolve_exec_argv(self) -> list[str]:
        if self._explicit_exec_argv is not None:
            return list(self._explicit_exec_argv)
        return self._port_allocator.rewrite_exec_argv(inherited_exec_argv())

    def start(self) -> None:
        """Spawn the worker process and start reading from it.

        When the process cannot be spawned the transport terminates and the
        failure is delivered as a fatal ``error`` followed by ``exit``.
        """
        with self._lock:
            if self.process is not None:
                return
            self._require_alive()

            self.exec_argv = self._resolve_exec_argv()
            parent_connection, child_connection = multiprocessing.Pipe(duplex=True)
            child_fd: int = child_connection.fileno()
            command: list[str] = build_command(self.exec_argv, child_fd, self._script_args)
            try:
                process = subprocess.Popen(
                    command,
                    stdin=subprocess.DEVNULL,
                    pass_fds=(child_fd,),
                    env=_child_environment(),
                )
            except OSError as exc:
                child_connection.close()
                parent_connection.close()
                self._terminated.set()
                logger.warning("Failed to start worker process: %s", exc)
                self._reader = threading.Thread(
                    target=self._report_start_failure,
                    args=(f"Failed to start worker process: {exc}",),
                    name=f"offload-process-reader-{next(_TRANSPORT_IDS)}",
                    daemon=True,
                )
                self._reader.start()
                return
            child_connection.close()

            self.process = process
            self._connection = parent_connection
            logger.debug("Started worker process %s with flags %s", process.pid, self.exec_argv)

            self._reader = threading.Thread(
                target=self._read_loop,
                args=(parent_connection, process),
                name=f"offload-process-reader-{next(_TRANSPORT_IDS)}",
                daemon=True,
            )
            self._reader.start()

    def send(self, envelope: Envelope) -> None:
        """Write one envelope to the worker process.

        :param envelope: Host-to-background envelope.
        :raises WorkerTerminatedError: If the transport was terminated.
        :raises OffloadTransportError: If the pipe is broken.
        :raises TypeError: If the payload cannot be pickled.
        """
        with self._lock:
            self._require_alive()
            connection: Connection | None = self._connection
        if connection is None:
            raise OffloadTransportError("Worker process is not started")
        if len(envelope.transfer_list) > 0:
            logger.debug("Process workers copy data; ignoring transfer list of %s envelope", envelope.kind)
        try:
            payload: bytes = pickle.dumps(envelope.to_wire(), protocol=pickle.HIGHEST_PROTOCOL)
        except (pickle.PicklingError, AttributeError) as exc:
            raise TypeError(f"Could not serialize {envelope.kind} payload: {exc}") from exc
        # Writes may block on a full pipe; terminate() must not wait for them.
        with self._send_lock:
            try:
                connection.send_bytes(payload)
            except (BrokenPipeError, EOFError, OSError) as exc:
                raise OffloadTransportError("Failed to send envelope to worker process") from exc

    def terminate(self) -> None:
        """Kill the worker process; ``exit`` follows once it is reaped."""
        with self._lock:
            if self._terminated.is_set() is True:
                return
            self._terminated.set()
            process: subprocess.Popen | None = self.process
        if process is not None:
            logger.debug("Killing worker process %s", process.pid)
            process.kill()

    def _report_start_failure(self, error_message: str) -> None:
        self._deliver(protocol.transport_error(error_message))
        self._deliver(protocol.exit_ack())

    def _read_loop(self, connection: Connection, process: subprocess.Popen) -> None:
        while True:
            try:
                incoming: object = connection.recv()
            except (EOFError, OSError):
                break
            except (pickle.UnpicklingError, AttributeError, ImportError, ValueError) as exc:
                logger.warning("Discarding undecodable message from worker process %s: %s", process.pid, exc)
                continue

            try:
                envelope: Envelope = Envelope.from_wire(incoming, _INBOUND_KINDS)
            except OffloadProtocolError as exc:
                logger.warning("Discarding malformed envelope from worker process %s: %s", process.pid, exc)
                continue

            if self._terminated.is_set() is True:
                continue
            self._deliver(envelope)

        self._finish(connection, process)

    def _finish(self, connection: Connection, process: subprocess.Popen) -> None:
        return_code: int = process.wait()
        try:
            connection.close()
        except OSError:
            pass

        with self._lock:
            crashed: bool = self._terminated.is_set() is False
            self._terminated.set()
            self._connection = None

        if crashed is True:
            logger.warning("Worker process %s exited unexpectedly with code %s", process.pid, return_code)
            self._deliver(
                protocol.transport_error(
                    f"Worker process {process.pid} exited unexpectedly with code {return_code}"
                )
            )
        logger.debug("Worker process %s exited with code %s", process.pid, return_code)
        self._deliver(protocol.exit_ack())


class ThreadTransport(Transport):
    """Run the background context on a thread of the host process.

    Envelopes are structured-cloned in both directions; buffers named in an
    envelope's transfer list are moved instead of copied. A running task
    cannot be interrupted: :meth:`terminate` stops delivery immediately and
    the thread exits once its current step returns.
    """

    kind: str = TRANSPORT_THREAD
    thread: threading.Thread | None
    _inbox: "queue.Queue[object]"
    _outbox: "queue.Queue[object]"
    _dispatcher: threading.Thread | None

    def __init__(self) -> None:
        super().__init__()
        self._inbox = queue.Queue()
        self._outbox = queue.Queue()
        self.thread = None
        self._dispatcher = None

    def start(self) -> None:
        with self._lock:
            if self.thread is not None:
                return
            self._require_alive()
            transport_id: int = next(_TRANSPORT_IDS)
            self.thread = threading.Thread(
                target=self._work_loop,
                name=f"offload-thread-worker-{transport_id}",
                daemon=True,
            )
            self._dispatcher = threading.Thread(
                target=self._dispatch_loop,
                name=f"offload-thread-dispatcher-{transport_id}",
                daemon=True,
            )
            self._dispatcher.start()
            self.thread.start()
            logger.debug("Started worker thread %s", self.thread.name)

    def send(self, envelope: Envelope) -> None:
        """Queue one envelope for the background thread.

        :param envelope: Host-to-background envelope.
        :raises WorkerTerminatedError: If the transport was terminated.
        :raises TypeError: If the payload cannot be cloned or a transfer list entry is not a buffer.
        """
        with self._lock:
            self._require_alive()
            if len(envelope.transfer_list) > 0:
                protocol.validate_transfer_list(envelope.transfer_list)
            self._inbox.put(protocol.clone_envelope(envelope))

    def terminate(self) -> None:
        with self._lock:
            if self._terminated.is_set() is True:
                return
            self._terminated.set()
        logger.debug("Stopping worker thread")
        self._inbox.put(_STOP)
        self._outbox.put(_STOP)

    def _emit(self, envelope: Envelope) -> None:
        if self._terminated.is_set() is True:
            return
        self._outbox.put(protocol.clone_envelope(envelope))

    def _work_loop(self) -> None:
        runner: TaskRunner = TaskRunner(self._emit)
        try:
            while True:
                item: object = self._inbox.get()
                if item is _STOP or self._terminated.is_set() is True:
                    return
                runner.handle(item)  # type: ignore[arg-type]
        except BaseException as exc:
            # SystemExit raised by a task ends the context like a process exit does.
            logger.exception("Worker thread crashed")
            with self._lock:
                already_terminated: bool = self._terminated.is_set()
                self._terminated.set()
            if already_terminated is False:
                self._outbox.put(protocol.transport_error(f"Worker thread crashed: {type(exc).__name__}: {exc}"))
                self._outbox.put(_STOP)

    def _dispatch_loop(self) -> None:
        while True:
            item: object = self._outbox.get()
            if item is _STOP:
                break
            envelope: Envelope = item  # type: ignore[assignment]
            fatal: bool = envelope.payload.get("fatal") is True
            if self._terminated.is_set() is True and fatal is False:
                continue
            self._deliver(envelope)
        self._deliver(protocol.exit_ack())


def create_transport(
    kind: str,
    script_args: Sequence[object] | None = None,
    exec_argv: Sequence[str] | None = None,
    port_allocator: DebugPortAllocator | None = None,
) -> Transport:
    """Construct the transport for one worker handle.

    :param kind: ``process`` or ``thread``.
    :param script_args: Process-only bootstrap arguments.
    :param exec_argv: Process-only execution flags override.
    :param port_allocator: Process-only inspector port allocator.
    :returns: Unstarted transport.
    :raises ValueError: If ``kind`` is unknown.
    """
    if kind == TRANSPORT_PROCESS:
        return ProcessTransport(script_args, exec_argv=exec_argv, port_allocator=port_allocator)
    if kind == TRANSPORT_THREAD:
        if script_args is not None and len(script_args) > 0:
            logger.debug("Thread workers have no command line; ignoring script arguments")
        return ThreadTransport()
    raise ValueError(f"transport must be one of: {TRANSPORT_PROCESS}, {TRANSPORT_THREAD}")
