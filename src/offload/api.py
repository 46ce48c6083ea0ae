"""User-facing API entrypoints for offload."""

from collections.abc import Mapping
from collections.abc import Sequence

from offload.handle import Task
from offload.handle import WorkerHandle
from offload.ports import default_port_allocator

SPAWN_OPTION_KEYS: frozenset[str] = frozenset({"exec_argv", "transport"})


def spawn(
    task: Task | None = None,
    args: Sequence[object] | None = None,
    options: Mapping[str, object] | None = None,
) -> WorkerHandle:
    """Start a background execution context and return its handle.

    :param task: Optional function or script path assigned right away.
    :param args: Arguments the task sees as ``sys.argv[1:]`` (process workers only).
    :param options: ``exec_argv`` replaces the inherited execution flags
        verbatim; ``transport`` picks ``process`` or ``thread``.
    :returns: Started worker handle.
    :raises ValueError: If ``options`` holds an unknown key.
    """
    if options is None:
        options = {}
    unknown: set[str] = set(options) - SPAWN_OPTION_KEYS
    if len(unknown) > 0:
        raise ValueError("Unknown spawn options: " + ", ".join(sorted(unknown)))

    exec_argv: object = options.get("exec_argv")
    if exec_argv is not None:
        if isinstance(exec_argv, (list, tuple)) is False:
            raise ValueError("exec_argv must be a list of strings")
        exec_argv = [str(flag) for flag in exec_argv]  # type: ignore[union-attr]

    transport: object = options.get("transport")
    if transport is not None and isinstance(transport, str) is False:
        raise ValueError("transport must be a string")

    return WorkerHandle(
        task,
        args=args,
        exec_argv=exec_argv,  # type: ignore[arg-type]
        transport=transport,  # type: ignore[arg-type]
        port_allocator=default_port_allocator(),
    )


def reset_port_counter() -> None:
    """Restore the process-wide inspector port counter to its base value.

    Test isolation hook; never call it while worker processes are alive.
    """
    default_port_allocator().reset()
