"""Tests for the envelope protocol."""

import array

import pytest

from offload import OffloadProtocolError
from offload import protocol
from offload.protocol import Envelope


def test_wire_form_drops_transfer_list() -> None:
    buffer = bytearray(b"xyz")
    envelope: Envelope = protocol.data([{"data": buffer}], [buffer])
    assert envelope.to_wire() == {"kind": "data", "payload": {"args": [{"data": buffer}]}}


def test_from_wire_accepts_valid_envelopes() -> None:
    envelope: Envelope = Envelope.from_wire({"kind": "progress", "payload": {"value": 0.5}})
    assert envelope == protocol.progress(0.5)


@pytest.mark.parametrize(
    "message",
    [
        "not a dict",
        {"payload": {}},
        {"kind": 3, "payload": {}},
        {"kind": "bogus", "payload": {}},
        {"kind": "data", "payload": []},
        {"kind": "data", "payload": {"args": "x"}},
        {"kind": "progress", "payload": {"value": "half"}},
        {"kind": "progress", "payload": {"value": True}},
        {"kind": "error", "payload": {"message": "boom"}},
        {"kind": "run-code", "payload": {"source": "def f(): pass", "name": "f", "scripts": [1]}},
        {"kind": "run-script", "payload": {}},
    ],
)
def test_from_wire_rejects_malformed_envelopes(message: object) -> None:
    with pytest.raises(OffloadProtocolError):
        Envelope.from_wire(message)


def test_from_wire_rejects_kinds_for_the_other_side() -> None:
    with pytest.raises(OffloadProtocolError):
        Envelope.from_wire({"kind": "data", "payload": {"args": []}}, protocol.WORKER_KINDS)


def test_run_script_kind_depends_on_imports() -> None:
    assert protocol.run_script("/tmp/a.py").kind == protocol.RUN_SCRIPT
    with_imports: Envelope = protocol.run_script("/tmp/a.py", ["/tmp/b.py"])
    assert with_imports.kind == protocol.RUN_SCRIPT_WITH_IMPORTS
    assert with_imports.payload["scripts"] == ["/tmp/b.py"]


def test_clone_copies_payload_but_moves_transferred_buffers() -> None:
    moved = bytearray(2048)
    copied = bytearray(16)
    sent: dict[str, object] = {"moved": moved, "copied": copied}
    clone: Envelope = protocol.clone_envelope(protocol.data([sent], [moved]))

    received: object = clone.payload["args"][0]  # type: ignore[index]
    assert isinstance(received, dict) is True
    assert received is not sent
    assert received["moved"] is moved
    assert received["copied"] is not copied
    assert received["copied"] == copied


def test_clone_accepts_array_buffers() -> None:
    values = array.array("d", [1.0, 2.0])
    clone: Envelope = protocol.clone_envelope(protocol.message([values], [values]))
    assert clone.payload["values"][0] is values  # type: ignore[index]


def test_clone_rejects_unserializable_payload() -> None:
    def local_function() -> None:
        return None

    with pytest.raises(TypeError):
        protocol.clone_envelope(protocol.data([local_function]))


def test_validate_transfer_list_requires_buffers() -> None:
    protocol.validate_transfer_list([bytearray(1), memoryview(b"a"), b"bytes"])
    with pytest.raises(TypeError):
        protocol.validate_transfer_list([{"not": "a buffer"}])


def test_transport_error_is_fatal() -> None:
    envelope: Envelope = protocol.transport_error("gone")
    assert envelope.kind == protocol.ERROR
    assert envelope.payload["fatal"] is True
    assert Envelope.from_wire(envelope.to_wire()).payload["type"] == "OffloadTransportError"
