"""Envelope protocol shared by the host and every background context."""

import io
import pickle
from collections.abc import Sequence

from offload.errors import OffloadProtocolError

RUN_CODE: str = "run-code"
RUN_SCRIPT: str = "run-script"
RUN_SCRIPT_WITH_IMPORTS: str = "run-script-with-imports"
DATA: str = "data"
MESSAGE: str = "message"
PROGRESS: str = "progress"
ERROR: str = "error"
DONE: str = "done"
EXIT: str = "exit"

HOST_KINDS: frozenset[str] = frozenset({RUN_CODE, RUN_SCRIPT, RUN_SCRIPT_WITH_IMPORTS, DATA})
WORKER_KINDS: frozenset[str] = frozenset({MESSAGE, PROGRESS, ERROR, DONE, EXIT})
TERMINAL_KINDS: frozenset[str] = frozenset({MESSAGE, DONE})


class Envelope:
    """One unit of host/background communication."""

    kind: str
    payload: dict[str, object]
    transfer_list: list[object]

    def __init__(
        self,
        kind: str,
        payload: dict[str, object] | None = None,
        transfer_list: Sequence[object] | None = None,
    ) -> None:
        """Initialize an envelope.

        :param kind: Envelope kind.
        :param payload: Kind-specific payload.
        :param transfer_list: Buffers whose ownership moves to the receiver.
        """
        self.kind = kind
        if payload is None:
            self.payload = {}
        else:
            self.payload = payload
        if transfer_list is None:
            self.transfer_list = []
        else:
            self.transfer_list = list(transfer_list)

    def __repr__(self) -> str:
        return f"Envelope(kind={self.kind!r}, payload={self.payload!r})"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Envelope) is False:
            return NotImplemented
        return self.kind == other.kind and self.payload == other.payload

    def to_wire(self) -> dict[str, object]:
        """Return the wire form of this envelope.

        The transfer list is never part of the wire form.

        :returns: Plain dictionary with ``kind`` and ``payload`` keys.
        """
        return {"kind": self.kind, "payload": self.payload}

    @classmethod
    def from_wire(cls, message: object, allowed_kinds: frozenset[str] | None = None) -> "Envelope":
        """Validate and decode one wire message.

        :param message: Raw message received from a channel.
        :param allowed_kinds: Kinds accepted by the receiving side.
        :returns: Decoded envelope.
        :raises OffloadProtocolError: If the message is malformed or of an unexpected kind.
        """
        if isinstance(message, dict) is False:
            raise OffloadProtocolError("Envelope must be a dict")

        kind: object = message.get("kind")
        if isinstance(kind, str) is False:
            raise OffloadProtocolError("Envelope kind must be a string")
        known_kinds: frozenset[str] = HOST_KINDS | WORKER_KINDS
        if kind not in known_kinds:
            raise OffloadProtocolError(f"Unknown envelope kind: {kind!r}")
        if allowed_kinds is not None and kind not in allowed_kinds:
            raise OffloadProtocolError(f"Unexpected envelope kind on this side: {kind!r}")

        payload: object = message.get("payload", {})
        if isinstance(payload, dict) is False:
            raise OffloadProtocolError("Envelope payload must be a dict")

        envelope: Envelope = cls(kind, payload)
        validate_payload(envelope)
        return envelope


def _require_str_field(envelope: Envelope, key: str) -> str:
    """Extract and validate a string payload field.

    :param envelope: Envelope to inspect.
    :param key: Field name.
    :returns: Field value.
    :raises OffloadProtocolError: If the field is missing or not a string.
    """
    value: object = envelope.payload.get(key)
    if isinstance(value, str) is False:
        raise OffloadProtocolError(f"{envelope.kind} payload field {key} must be a string")
    return value


def _require_list_field(envelope: Envelope, key: str) -> list[object]:
    """Extract and validate a list payload field.

    :param envelope: Envelope to inspect.
    :param key: Field name.
    :returns: Field value.
    :raises OffloadProtocolError: If the field is missing or not a list.
    """
    value: object = envelope.payload.get(key)
    if isinstance(value, list) is False:
        raise OffloadProtocolError(f"{envelope.kind} payload field {key} must be a list")
    return value


def validate_payload(envelope: Envelope) -> None:
    """Check that an envelope payload has the shape its kind requires.

    :param envelope: Envelope to validate.
    :raises OffloadProtocolError: If a required field is missing or mistyped.
    """
    kind: str = envelope.kind
    if kind == RUN_CODE:
        _require_str_field(envelope, "source")
        _require_str_field(envelope, "name")
        scripts: list[object] = _require_list_field(envelope, "scripts")
        for script in scripts:
            if isinstance(script, str) is False:
                raise OffloadProtocolError("run-code scripts must be strings")
        return
    if kind == RUN_SCRIPT:
        _require_str_field(envelope, "path")
        return
    if kind == RUN_SCRIPT_WITH_IMPORTS:
        _require_str_field(envelope, "path")
        scripts = _require_list_field(envelope, "scripts")
        for script in scripts:
            if isinstance(script, str) is False:
                raise OffloadProtocolError("run-script-with-imports scripts must be strings")
        return
    if kind == DATA:
        _require_list_field(envelope, "args")
        return
    if kind == MESSAGE:
        _require_list_field(envelope, "values")
        return
    if kind == PROGRESS:
        value: object = envelope.payload.get("value")
        is_number: bool = isinstance(value, (int, float)) is True and isinstance(value, bool) is False
        if is_number is False:
            raise OffloadProtocolError("progress payload field value must be a number")
        return
    if kind == ERROR:
        _require_str_field(envelope, "message")
        _require_str_field(envelope, "type")
        _require_str_field(envelope, "stack")
        return


def run_code(source: str, name: str, scripts: Sequence[str] = ()) -> Envelope:
    """Build a ``run-code`` envelope.

    :param source: Dedented function source.
    :param name: Name the function is bound to once the source executes.
    :param scripts: Helper scripts to load before the function runs.
    :returns: Envelope.
    """
    return Envelope(RUN_CODE, {"source": source, "name": name, "scripts": list(scripts)})


def run_script(path: str, scripts: Sequence[str] = ()) -> Envelope:
    """Build a ``run-script`` or ``run-script-with-imports`` envelope.

    :param path: Resolved script path.
    :param scripts: Helper scripts to load before the script.
    :returns: Envelope.
    """
    if len(scripts) == 0:
        return Envelope(RUN_SCRIPT, {"path": path})
    return Envelope(RUN_SCRIPT_WITH_IMPORTS, {"path": path, "scripts": list(scripts)})


def data(args: Sequence[object], transfer_list: Sequence[object] | None = None) -> Envelope:
    return Envelope(DATA, {"args": list(args)}, transfer_list)


def message(values: Sequence[object], transfer_list: Sequence[object] | None = None) -> Envelope:
    return Envelope(MESSAGE, {"values": list(values)}, transfer_list)


def done() -> Envelope:
    return Envelope(DONE)


def progress(value: float) -> Envelope:
    return Envelope(PROGRESS, {"value": value})


def error(type_name: str, error_message: str, stack: str = "") -> Envelope:
    return Envelope(ERROR, {"type": type_name, "message": error_message, "stack": stack})


def transport_error(error_message: str) -> Envelope:
    """Build the error envelope a transport reports when its background context dies.

    :param error_message: Description of the failure.
    :returns: Error envelope flagged as fatal for the handle.
    """
    return Envelope(
        ERROR,
        {"type": "OffloadTransportError", "message": error_message, "stack": "", "fatal": True},
    )


def exit_ack() -> Envelope:
    return Envelope(EXIT)


def validate_transfer_list(transfer_list: Sequence[object]) -> None:
    """Ensure every transfer list entry exposes a buffer.

    :param transfer_list: Candidate transfer list.
    :raises TypeError: If an entry does not support the buffer protocol.
    """
    for item in transfer_list:
        try:
            view: memoryview = memoryview(item)  # type: ignore[arg-type]
        except TypeError as exc:
            raise TypeError(
                f"Transfer list entries must support the buffer protocol, got {type(item).__name__}"
            ) from exc
        view.release()


class _TransferPickler(pickle.Pickler):
    """Pickler that leaves transfer list entries out of the byte stream."""

    _transfer_ids: dict[int, int]

    def __init__(self, stream: io.BytesIO, transfer_list: Sequence[object]) -> None:
        super().__init__(stream, protocol=pickle.HIGHEST_PROTOCOL)
        self._transfer_ids = {}
        for index, item in enumerate(transfer_list):
            self._transfer_ids[id(item)] = index

    def persistent_id(self, obj: object) -> object:
        return self._transfer_ids.get(id(obj))


class _TransferUnpickler(pickle.Unpickler):
    """Unpickler that resolves transfer list entries to the original objects."""

    _transfer_list: Sequence[object]

    def __init__(self, stream: io.BytesIO, transfer_list: Sequence[object]) -> None:
        super().__init__(stream)
        self._transfer_list = transfer_list

    def persistent_load(self, pid: object) -> object:
        if isinstance(pid, int) is False:
            raise OffloadProtocolError(f"Unknown transfer reference: {pid!r}")
        return self._transfer_list[pid]


def clone_envelope(envelope: Envelope) -> Envelope:
    """Structured-clone an envelope for delivery to another thread.

    The payload is copied through a pickle round trip; objects named in the
    transfer list are handed over as-is, so their memory is moved rather than
    copied and the sender must stop using them.

    :param envelope: Envelope to clone.
    :returns: Independent envelope sharing only the transferred objects.
    :raises TypeError: If the payload cannot be serialized.
    """
    transfer_list: list[object] = envelope.transfer_list
    stream: io.BytesIO = io.BytesIO()
    pickler = _TransferPickler(stream, transfer_list)
    try:
        pickler.dump(envelope.payload)
    except (pickle.PicklingError, AttributeError) as exc:
        raise TypeError(f"Could not clone {envelope.kind} payload: {exc}") from exc
    stream.seek(0)
    unpickler = _TransferUnpickler(stream, transfer_list)
    payload: object = unpickler.load()
    if isinstance(payload, dict) is False:
        raise OffloadProtocolError("Cloned payload must be a dict")
    return Envelope(envelope.kind, payload, transfer_list)
