"""Process-wide configuration for offload workers."""

import copy
import os
import sys
import threading
from collections.abc import Mapping

from offload.errors import OffloadConfigError

TRANSPORT_PROCESS: str = "process"
TRANSPORT_THREAD: str = "thread"
TRANSPORT_KINDS: frozenset[str] = frozenset({TRANSPORT_PROCESS, TRANSPORT_THREAD})

# Interpreter options that consume the following argument when written apart.
_LONG_FLAGS_WITH_VALUE: frozenset[str] = frozenset({"--check-hash-based-pycs"})
_SHORT_FLAGS_WITH_VALUE: frozenset[str] = frozenset({"W", "X"})
# Short options after which the command line belongs to the program.
_SHORT_PROGRAM_FLAGS: frozenset[str] = frozenset({"m", "c"})

_CONFIG_LOCK: threading.Lock = threading.Lock()


def _default_config() -> dict[str, object]:
    return {
        "basepath": {
            TRANSPORT_PROCESS: "",
            TRANSPORT_THREAD: "",
        },
        "transport": None,
        "exec_argv": None,
    }


_CONFIG: dict[str, object] = _default_config()


def _deep_merge(destination: dict[str, object], source: Mapping[str, object], path: str) -> None:
    """Merge ``source`` into ``destination`` in place.

    :param destination: Mapping being updated.
    :param source: Partial update.
    :param path: Dotted path of ``destination`` for error messages.
    :raises OffloadConfigError: If a mapping would be replaced by a scalar or vice versa.
    """
    for key, value in source.items():
        key_path: str = key if path == "" else f"{path}.{key}"
        current: object = destination.get(key)
        current_is_mapping: bool = isinstance(current, dict)
        value_is_mapping: bool = isinstance(value, Mapping)

        if current_is_mapping is True and value_is_mapping is False:
            raise OffloadConfigError(f"Expected config property {key_path} to be a mapping")
        if current_is_mapping is False and value_is_mapping is True and key in destination:
            raise OffloadConfigError(f"Expected config property not to be a mapping: {key_path}")

        if current_is_mapping is True:
            _deep_merge(current, value, key_path)  # type: ignore[arg-type]
            continue
        destination[key] = copy.deepcopy(value)


def _validate(config: Mapping[str, object]) -> None:
    """Check the merged configuration values.

    :param config: Candidate configuration.
    :raises OffloadConfigError: If a value has the wrong type.
    """
    transport: object = config.get("transport")
    if transport is not None and transport not in TRANSPORT_KINDS:
        raise OffloadConfigError(
            "transport must be one of: " + ", ".join(sorted(TRANSPORT_KINDS))
        )

    exec_argv: object = config.get("exec_argv")
    if exec_argv is not None:
        if isinstance(exec_argv, (list, tuple)) is False:
            raise OffloadConfigError("exec_argv must be a list of strings")
        for flag in exec_argv:  # type: ignore[union-attr]
            if isinstance(flag, str) is False:
                raise OffloadConfigError("exec_argv must be a list of strings")

    basepath: object = config.get("basepath")
    if isinstance(basepath, dict) is True:
        for kind, prefix in basepath.items():  # type: ignore[union-attr]
            if isinstance(prefix, (str, os.PathLike)) is False:
                raise OffloadConfigError(f"basepath.{kind} must be a path")


def get_config() -> dict[str, object]:
    """Return a copy of the current configuration.

    :returns: Deep copy of the configuration mapping.
    """
    with _CONFIG_LOCK:
        return copy.deepcopy(_CONFIG)


def set_config(update: Mapping[str, object]) -> dict[str, object]:
    """Deep-merge ``update`` into the configuration.

    :param update: Partial configuration.
    :returns: Copy of the resulting configuration.
    :raises OffloadConfigError: If the update does not match the configuration shape.
    """
    if isinstance(update, Mapping) is False:
        raise OffloadConfigError("Expected config update to be a mapping")

    global _CONFIG
    with _CONFIG_LOCK:
        candidate: dict[str, object] = copy.deepcopy(_CONFIG)
        _deep_merge(candidate, update, "")
        _validate(candidate)
        _CONFIG = candidate
        return copy.deepcopy(_CONFIG)


def reset_config() -> None:
    """Restore the default configuration."""
    global _CONFIG
    with _CONFIG_LOCK:
        _CONFIG = _default_config()


def default_transport() -> str:
    """Return the transport kind used when a spawn does not pick one.

    :returns: Configured transport, else ``process`` on POSIX and ``thread`` elsewhere.
    """
    configured: object = get_config().get("transport")
    if isinstance(configured, str) is True:
        return configured
    if os.name == "posix":
        return TRANSPORT_PROCESS
    return TRANSPORT_THREAD


def resolve_script_path(script: str, transport_kind: str) -> str:
    """Resolve a script path against the base path of one transport kind.

    :param script: Absolute or relative script path.
    :param transport_kind: ``process`` or ``thread``.
    :returns: Script path to hand to the background context.
    """
    if os.path.isabs(script) is True:
        return script
    basepath: object = get_config().get("basepath")
    prefix: object = ""
    if isinstance(basepath, dict) is True:
        prefix = basepath.get(transport_kind, "")  # type: ignore[union-attr]
    if isinstance(prefix, os.PathLike) is True:
        prefix = os.fspath(prefix)  # type: ignore[arg-type]
    if isinstance(prefix, str) is False or len(prefix) == 0:
        return os.path.abspath(script)
    return os.path.abspath(os.path.join(prefix, script))


def inherited_exec_argv() -> list[str]:
    """Return the execution flags a spawned worker process inherits.

    :returns: Configured ``exec_argv``, else the interpreter flags of this process.
    """
    configured: object = get_config().get("exec_argv")
    if isinstance(configured, (list, tuple)) is True:
        return list(configured)  # type: ignore[arg-type]
    return interpreter_flags(sys.orig_argv)


def _short_option_group(arg: str) -> tuple[str, bool, bool]:
    """Split a single-dash option group such as ``-Im`` or ``-Xdev``.

    :param arg: Option group starting with one dash.
    :returns: Tuple of ``(kept_options, ends_options, takes_next_argument)``;
        ``kept_options`` is ``-`` alone when nothing precedes ``-m``/``-c``.
    """
    for position in range(1, len(arg)):
        letter: str = arg[position]
        if letter in _SHORT_PROGRAM_FLAGS:
            return arg[:position], True, False
        if letter in _SHORT_FLAGS_WITH_VALUE:
            return arg, False, position == len(arg) - 1
    return arg, False, False


def interpreter_flags(argv: list[str]) -> list[str]:
    """Extract interpreter options from a full original command line.

    :param argv: Command line including the executable, such as ``sys.orig_argv``.
    :returns: Options placed before the script, ``-m`` or ``-c``.
    """
    flags: list[str] = []
    index: int = 1
    while index < len(argv):
        arg: str = argv[index]
        if arg in ("-", "--") or arg.startswith("-") is False:
            break

        if arg.startswith("--") is True:
            flags.append(arg)
            if arg in _LONG_FLAGS_WITH_VALUE and index + 1 < len(argv):
                flags.append(argv[index + 1])
                index += 1
            index += 1
            continue

        kept, ends_options, takes_value = _short_option_group(arg)
        if len(kept) > 1:
            flags.append(kept)
        if ends_options is True:
            break
        if takes_value is True and index + 1 < len(argv):
            flags.append(argv[index + 1])
            index += 1
        index += 1
    return flags
