"""Markers that test files apply to their tests."""

from __future__ import annotations

from typing import TypeVar

# Marker attribute name set on decorated functions and classes.
_PENDING_MARKER = "_testmux_pending"

T = TypeVar("T")


def pending(obj: T) -> T:
    """Mark a test function, or every test in a class, as pending.

    Pending tests are reported with ``test.pending`` and are not executed.

    Args:
        obj: A test function or a ``Test*`` class.

    Returns:
        The same object, marked.
    """
    setattr(obj, _PENDING_MARKER, True)
    return obj


def is_pending(obj: object) -> bool:
    """Return True if ``obj`` was marked with :func:`pending`."""
    return bool(getattr(obj, _PENDING_MARKER, False))
