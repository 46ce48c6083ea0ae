"""Tests for the configuration provider."""

import os

import pytest

from offload import OffloadConfigError
from offload import get_config
from offload import set_config
from offload.config import default_transport
from offload.config import inherited_exec_argv
from offload.config import interpreter_flags
from offload.config import resolve_script_path


def test_set_config_deep_merges() -> None:
    set_config({"basepath": {"thread": "/srv/scripts"}})
    config: dict[str, object] = get_config()
    basepath: object = config["basepath"]
    assert isinstance(basepath, dict) is True
    assert basepath["thread"] == "/srv/scripts"
    assert basepath["process"] != ""


def test_get_config_returns_a_copy() -> None:
    config: dict[str, object] = get_config()
    config["transport"] = "thread"
    assert get_config()["transport"] is None


def test_replacing_mapping_with_scalar_fails() -> None:
    with pytest.raises(OffloadConfigError):
        set_config({"basepath": "/srv"})


def test_replacing_scalar_with_mapping_fails() -> None:
    with pytest.raises(OffloadConfigError):
        set_config({"transport": {"kind": "thread"}})


def test_invalid_values_leave_config_untouched() -> None:
    before: dict[str, object] = get_config()
    with pytest.raises(OffloadConfigError):
        set_config({"transport": "carrier-pigeon"})
    with pytest.raises(OffloadConfigError):
        set_config({"exec_argv": "--inspect"})
    assert get_config() == before


def test_default_transport_follows_config() -> None:
    set_config({"transport": "thread"})
    assert default_transport() == "thread"


def test_default_transport_platform_fallback() -> None:
    expected: str = "process" if os.name == "posix" else "thread"
    assert default_transport() == expected


def test_resolve_script_path_uses_transport_basepath(tmp_path: os.PathLike) -> None:
    set_config({"basepath": {"process": str(tmp_path), "thread": "/elsewhere"}})
    assert resolve_script_path("job.py", "process") == os.path.join(str(tmp_path), "job.py")
    assert resolve_script_path("job.py", "thread") == os.path.abspath("/elsewhere/job.py")


def test_resolve_script_path_keeps_absolute_paths() -> None:
    absolute: str = os.path.abspath("job.py")
    assert resolve_script_path(absolute, "thread") == absolute


def test_inherited_exec_argv_prefers_config() -> None:
    set_config({"exec_argv": ["--inspect", "-u"]})
    assert inherited_exec_argv() == ["--inspect", "-u"]


@pytest.mark.parametrize(
    ("argv", "expected"),
    [
        (["python", "script.py", "-u"], []),
        (["python", "-u", "-X", "dev", "script.py"], ["-u", "-X", "dev"]),
        (["python", "-Xdev", "-W", "error", "-m", "pytest", "-q"], ["-Xdev", "-W", "error"]),
        (["python", "-O", "-c", "pass"], ["-O"]),
        (["python"], []),
        (["python", "-Im", "pytest", "-q"], ["-I"]),
        (["python", "-Bc", "pass"], ["-B"]),
        (["python", "-Werror::DeprecationWarning", "-m", "pytest"], ["-Werror::DeprecationWarning"]),
        (["python", "-IW", "error", "script.py"], ["-IW", "error"]),
        (["python", "--check-hash-based-pycs", "always", "-m", "job"], ["--check-hash-based-pycs", "always"]),
        (["python", "-u", "--", "script.py"], ["-u"]),
    ],
)
def test_interpreter_flags(argv: list[str], expected: list[str]) -> None:
    assert interpreter_flags(argv) == expected
