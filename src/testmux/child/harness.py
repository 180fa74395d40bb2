"""Worker child: executes test files and reports them as protocol frames.

The child reads one file path per line on stdin. For each path it writes
``suite.start`` for the file, one frame per test and nested suite, and
finally ``suite.end`` for the file, which tells the parent it is idle.
"""

from __future__ import annotations

import contextlib
import io
import os
import sys
import traceback
from typing import IO, TYPE_CHECKING

from testmux.child.loader import LoadError, SuiteNode, TestNode, load_test_file
from testmux.engine.protocol import (
    SUITE_END,
    SUITE_START,
    TEST_FAILED,
    TEST_PASSED,
    TEST_PENDING,
    Frame,
    FrameError,
    FrameKind,
    FrameStatus,
    encode_frame,
)

if TYPE_CHECKING:
    from collections.abc import Iterable

LOAD_ERROR_DESCRIPTION = "<load>"


def _class_name(exc: BaseException) -> str:
    cls = type(exc)
    if cls.__module__ == "builtins":
        return cls.__qualname__
    return f"{cls.__module__}.{cls.__qualname__}"


def frame_error(exc: BaseException) -> FrameError:
    """Capture an exception as text for the wire."""
    return FrameError(
        message=str(exc),
        trace="".join(traceback.format_exception(exc)),
        class_name=_class_name(exc),
    )


class FrameWriter:
    """Writes frames to a binary stream, flushing after each one."""

    def __init__(self, stream: IO[bytes]) -> None:
        self._stream = stream

    def write(self, frame: Frame) -> None:
        self._stream.write(encode_frame(frame))
        self._stream.flush()

    def suite(self, event: str, suite: SuiteNode) -> None:
        self.write(
            Frame(
                kind=FrameKind.SUITE,
                event=event,
                description=suite.description,
                title=suite.title,
            )
        )

    def test(
        self,
        event: str,
        test: TestNode,
        status: FrameStatus,
        error: FrameError | None = None,
    ) -> None:
        self.write(
            Frame(
                kind=FrameKind.TEST,
                event=event,
                description=test.description,
                title=test.title,
                status=status,
                error=error,
            )
        )


@contextlib.contextmanager
def _captured_output():
    """Swallow anything test code prints so it cannot reach the frame stream."""
    sink = io.StringIO()
    with contextlib.redirect_stdout(sink), contextlib.redirect_stderr(sink):
        yield sink


def run_test(test: TestNode, writer: FrameWriter) -> None:
    """Run one test and write its outcome frame."""
    if test.pending:
        writer.test(TEST_PENDING, test, FrameStatus.PENDING)
        return

    try:
        with _captured_output():
            test.func()
    except Exception as exc:
        writer.test(TEST_FAILED, test, FrameStatus.FAIL, frame_error(exc))
    else:
        writer.test(TEST_PASSED, test, FrameStatus.PASS)


def run_suite(suite: SuiteNode, writer: FrameWriter) -> None:
    """Run every child of ``suite`` in order. Start/end frames are the caller's."""
    for child in suite.children:
        if isinstance(child, SuiteNode):
            writer.suite(SUITE_START, child)
            run_suite(child, writer)
            writer.suite(SUITE_END, child)
        else:
            run_test(child, writer)


def run_file(path: str, writer: FrameWriter) -> None:
    """Execute the test file at ``path``, framed by its root suite.

    An import failure is reported as a single failed test described as
    ``<load>``; the root ``suite.end`` is written in every case.
    """
    root = SuiteNode(description=path, title=path)
    writer.suite(SUITE_START, root)
    try:
        try:
            with _captured_output():
                loaded = load_test_file(path)
        except LoadError as exc:
            cause = exc.__cause__ or exc
            load_test = TestNode(
                description=LOAD_ERROR_DESCRIPTION,
                title=f"{path}::{LOAD_ERROR_DESCRIPTION}",
                func=lambda: None,
            )
            error = FrameError(
                message=str(exc),
                trace="".join(traceback.format_exception(cause)),
                class_name=_class_name(cause),
            )
            writer.test(TEST_FAILED, load_test, FrameStatus.FAIL, error)
        else:
            run_suite(loaded, writer)
    finally:
        writer.suite(SUITE_END, root)


def serve(lines: Iterable[bytes], writer: FrameWriter) -> int:
    """Run each path read from ``lines`` until the input is exhausted.

    Returns:
        Number of files executed.
    """
    count = 0
    for raw in lines:
        path = raw.decode("utf-8").removesuffix("\n")
        if not path:
            continue
        run_file(path, writer)
        count += 1
    return count


def main() -> int:
    """Entry point for ``python -m testmux.child``.

    Frames go to a private duplicate of the original stdout. File
    descriptors 1 and 2 are pointed at the null device, so descriptor
    level writes from test code or its subprocesses never reach the
    parent's frame channels.
    """
    frames_fd = os.dup(sys.stdout.fileno())
    devnull = os.open(os.devnull, os.O_WRONLY)
    os.dup2(devnull, sys.stdout.fileno())
    os.dup2(devnull, sys.stderr.fileno())
    os.close(devnull)

    with os.fdopen(frames_fd, "wb", buffering=0) as out:
        serve(sys.stdin.buffer, FrameWriter(out))
    return 0
