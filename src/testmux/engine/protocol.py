"""Line-framed message protocol between worker children and the scheduler.

Each frame is one JSON array terminated by ``\\n``::

    [type_tag, event, description, title, status, message, trace, class_name]

``type_tag`` is ``"t"`` for a test and ``"s"`` for a suite. Before
serialization every newline inside a string field is replaced with BEL
(``\\x07``), so the only newline in an encoded frame is its terminator.
Decoding reverses the substitution.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import TYPE_CHECKING, Any

from testmux._internal.errors import ProtocolError

if TYPE_CHECKING:
    from collections.abc import Iterator

    from testmux.engine.events import EventEmitter

DELIMITER = b"\n"
NEWLINE_SENTINEL = "\x07"
FRAME_ARITY = 8

SUITE_START = "suite.start"
SUITE_END = "suite.end"
TEST_PASSED = "test.passed"
TEST_FAILED = "test.failed"
TEST_PENDING = "test.pending"

TEST_EVENTS = (TEST_PASSED, TEST_FAILED, TEST_PENDING)


class FrameKind(Enum):
    """Discriminant for what a frame describes."""

    TEST = "t"
    SUITE = "s"


class FrameStatus(IntEnum):
    """Outcome code carried in every frame. Payload data only."""

    FAIL = 0
    PASS = 1
    PENDING = 2


@dataclass(frozen=True)
class FrameError:
    """Exception details for a failed test, as text.

    Attributes:
        message: ``str()`` of the original exception.
        trace: Formatted traceback text, usually multi-line.
        class_name: Qualified name of the original exception class.
    """

    message: str
    trace: str
    class_name: str


@dataclass(frozen=True)
class Frame:
    """One decoded test-lifecycle message.

    Attributes:
        kind: Whether the subject is a test or a suite.
        event: Event name, e.g. ``"test.failed"``.
        description: The subject's own description.
        title: The subject's full title, including its parents.
        status: Outcome code.
        error: Exception details, if the child sent any.
    """

    kind: FrameKind
    event: str
    description: str
    title: str
    status: FrameStatus = FrameStatus.PASS
    error: FrameError | None = None


# ---------------------------------------------------------------------------
# Reconstructed values
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RemoteTest:
    """Display-only projection of a test that ran in a worker."""

    __test__ = False

    description: str
    title: str


@dataclass(frozen=True)
class RemoteSuite:
    """Display-only projection of a suite that ran in a worker."""

    description: str
    title: str


@dataclass(frozen=True)
class RemoteException:
    """Display-only facsimile of an exception raised in a worker.

    Not an exception type: it carries text and can never be raised.
    """

    message: str
    trace: str
    class_name: str


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------


def pack_string(value: str) -> str:
    """Replace newlines with the sentinel so the frame stays on one line."""
    return value.replace("\n", NEWLINE_SENTINEL)


def unpack_string(value: str) -> str:
    """Restore newlines replaced by :func:`pack_string`."""
    return value.replace(NEWLINE_SENTINEL, "\n")


def encode_frame(frame: Frame) -> bytes:
    """Serialize a frame to its wire form, terminator included.

    Args:
        frame: The frame to encode.

    Returns:
        UTF-8 bytes ending in exactly one ``\\n``.
    """
    error = frame.error
    fields: list[Any] = [
        frame.kind.value,
        pack_string(frame.event),
        pack_string(frame.description),
        pack_string(frame.title),
        int(frame.status),
        pack_string(error.message) if error else None,
        pack_string(error.trace) if error else None,
        error.class_name if error else None,
    ]
    text = json.dumps(fields, ensure_ascii=False, separators=(",", ":"))
    return text.encode("utf-8") + DELIMITER


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def _string_field(fields: list[Any], index: int) -> str:
    value = fields[index]
    if not isinstance(value, str):
        msg = f"Frame field {index} must be a string, got: {value!r}"
        raise ProtocolError(msg)
    return unpack_string(value)


def _optional_string_field(fields: list[Any], index: int) -> str | None:
    if fields[index] is None:
        return None
    return _string_field(fields, index)


def decode_frame(line: bytes) -> Frame:
    """Decode a single frame, without its terminator.

    Args:
        line: Raw bytes of one frame.

    Returns:
        The decoded Frame with newlines restored.

    Raises:
        ProtocolError: If the bytes are not a well-formed frame.
    """
    try:
        fields = json.loads(line.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        msg = f"Undecodable frame {line[:80]!r}: {exc}"
        raise ProtocolError(msg) from exc

    if not isinstance(fields, list) or len(fields) != FRAME_ARITY:
        msg = f"Frame must be a list of {FRAME_ARITY} fields, got: {line[:80]!r}"
        raise ProtocolError(msg)

    status_value = fields[4]
    if isinstance(status_value, bool) or not isinstance(status_value, int):
        msg = f"Frame status must be an integer, got: {status_value!r}"
        raise ProtocolError(msg)
    try:
        status = FrameStatus(status_value)
    except ValueError:
        msg = f"Unknown frame status: {status_value}"
        raise ProtocolError(msg) from None

    kind = FrameKind.TEST if fields[0] == FrameKind.TEST.value else FrameKind.SUITE

    message = _optional_string_field(fields, 5)
    trace = _optional_string_field(fields, 6)
    class_name = _optional_string_field(fields, 7)
    error: FrameError | None = None
    if message is not None or trace is not None or class_name is not None:
        error = FrameError(
            message=message or "",
            trace=trace or "",
            class_name=class_name or "",
        )

    return Frame(
        kind=kind,
        event=_string_field(fields, 1),
        description=_string_field(fields, 2),
        title=_string_field(fields, 3),
        status=status,
        error=error,
    )


def feed(buffer: bytes, data: bytes) -> tuple[list[Frame], bytes]:
    """Append ``data`` to ``buffer`` and decode every complete frame.

    Bytes after the last delimiter are returned for the next call, so any
    split of the same byte stream yields the same frames in the same order.
    Blank lines are skipped.

    Args:
        buffer: Bytes left over from the previous call.
        data: Newly read bytes.

    Returns:
        Tuple of (decoded frames, remaining buffer).

    Raises:
        ProtocolError: If a complete frame cannot be decoded.
    """
    buffer += data
    frames: list[Frame] = []
    start = 0
    end = buffer.find(DELIMITER, start)
    while end != -1:
        line = buffer[start:end]
        if line.strip():
            frames.append(decode_frame(line))
        start = end + 1
        end = buffer.find(DELIMITER, start)
    return frames, buffer[start:]


class FrameDecoder:
    """Incremental decoder for one stream.

    Keeps the partial-frame buffer between reads. Once it has raised
    :class:`ProtocolError` the stream is desynchronized and the decoder
    refuses further input.
    """

    def __init__(self) -> None:
        self._buffer = b""
        self._broken = False

    @property
    def buffered(self) -> int:
        """Number of bytes waiting for a delimiter."""
        return len(self._buffer)

    def decode(self, data: bytes) -> Iterator[Frame]:
        """Yield the frames completed by ``data`` one at a time.

        Frames before a corrupt line are yielded before the
        :class:`ProtocolError` for that line is raised, so a consumer
        sees everything the stream delivered intact.
        """
        if self._broken:
            msg = "Decoder is desynchronized and cannot accept more data"
            raise ProtocolError(msg)

        self._buffer += data
        end = self._buffer.find(DELIMITER)
        while end != -1:
            line = self._buffer[:end]
            self._buffer = self._buffer[end + 1 :]
            if line.strip():
                try:
                    frame = decode_frame(line)
                except ProtocolError:
                    self._broken = True
                    raise
                yield frame
            end = self._buffer.find(DELIMITER)

    def feed(self, data: bytes) -> list[Frame]:
        """Decode the frames completed by ``data``."""
        return list(self.decode(data))


# ---------------------------------------------------------------------------
# Reconstruction and emission
# ---------------------------------------------------------------------------


def hydrate(frame: Frame) -> RemoteTest | RemoteSuite:
    """Build the display value for a frame's subject."""
    if frame.kind is FrameKind.TEST:
        return RemoteTest(description=frame.description, title=frame.title)
    return RemoteSuite(description=frame.description, title=frame.title)


def remote_exception(frame: Frame) -> RemoteException:
    """Build the display exception for a frame, empty fields if none was sent."""
    error = frame.error
    if error is None:
        return RemoteException(message="", trace="", class_name="")
    return RemoteException(
        message=error.message,
        trace=error.trace,
        class_name=error.class_name,
    )


def event_args(frame: Frame) -> tuple[Any, ...]:
    """Return the listener arguments for a frame's event.

    ``(value, exception, frame)`` for ``test.failed`` and
    ``(value, frame)`` for every other event.
    """
    value = hydrate(frame)
    if frame.event == TEST_FAILED:
        return (value, remote_exception(frame), frame)
    return (value, frame)


def emit_frame(emitter: EventEmitter, frame: Frame) -> None:
    """Emit the event named by ``frame.event``."""
    emitter.emit(frame.event, *event_args(frame))


def is_terminal(frame: Frame, path: str | None) -> bool:
    """Return True if ``frame`` closes the root suite of file ``path``.

    Worker children wrap each file in a root suite described by the path
    they were given, so its ``suite.end`` means the worker is idle again.
    """
    return (
        path is not None
        and frame.kind is FrameKind.SUITE
        and frame.event == SUITE_END
        and frame.description == path
    )
