"""Dynamic test file loading via importlib."""

from __future__ import annotations

import functools
import hashlib
import importlib.util
import inspect
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from testmux._internal.errors import TestmuxError
from testmux.markers import is_pending

if TYPE_CHECKING:
    from collections.abc import Callable
    from types import ModuleType

_TEST_PREFIX = "test_"
_CLASS_PREFIX = "Test"


class LoadError(TestmuxError):
    """Raised when a test file cannot be loaded.

    Only raised inside worker children, where it is reported as a failed
    test rather than propagated.
    """


@dataclass
class TestNode:
    """A single callable test.

    Attributes:
        description: The test's own name.
        title: Full node id, ``path::Class::name``.
        func: Zero-argument callable that runs the test.
        pending: True if the test is marked pending.
    """

    __test__ = False

    description: str
    title: str
    func: Callable[[], Any]
    pending: bool = False


@dataclass
class SuiteNode:
    """A group of tests: a whole file or one ``Test*`` class."""

    description: str
    title: str
    children: list[TestNode | SuiteNode] = field(default_factory=list)


def _call_method(cls: type, name: str) -> Any:
    instance = cls()
    return getattr(instance, name)()


def _collect_class(cls: type, parent_title: str) -> SuiteNode:
    title = f"{parent_title}::{cls.__name__}"
    suite = SuiteNode(description=cls.__name__, title=title)
    class_pending = is_pending(cls)
    for name, attr in vars(cls).items():
        if not name.startswith(_TEST_PREFIX) or not callable(attr):
            continue
        suite.children.append(
            TestNode(
                description=name,
                title=f"{title}::{name}",
                func=functools.partial(_call_method, cls, name),
                pending=class_pending or is_pending(attr),
            )
        )
    return suite


def _collect_module(module: ModuleType, path: str) -> SuiteNode:
    root = SuiteNode(description=path, title=path)
    for name, obj in vars(module).items():
        if getattr(obj, "__module__", None) != module.__name__:
            continue
        if inspect.isclass(obj) and name.startswith(_CLASS_PREFIX):
            root.children.append(_collect_class(obj, path))
        elif inspect.isfunction(obj) and name.startswith(_TEST_PREFIX):
            root.children.append(
                TestNode(
                    description=name,
                    title=f"{path}::{name}",
                    func=obj,
                    pending=is_pending(obj),
                )
            )
    return root


def load_test_file(file_path: str) -> SuiteNode:
    """Load a test file and collect its tests.

    Imports the file under a module name derived from its path, then
    collects module-level ``test_*`` functions and ``Test*`` classes in
    definition order. Objects imported from other modules are ignored.

    Args:
        file_path: Path to the Python test file.

    Returns:
        The root SuiteNode, described and titled by ``file_path``.

    Raises:
        LoadError: If the file does not exist, is not a ``.py`` file,
            or fails to import.
    """
    path = Path(file_path)

    if not path.exists():
        msg = f"Test file not found: {path}"
        raise LoadError(msg)

    if path.suffix != ".py":
        msg = f"Test file must be a .py file, got: {path}"
        raise LoadError(msg)

    digest = hashlib.sha1(str(path.resolve()).encode("utf-8")).hexdigest()[:12]  # noqa: S324
    module_name = f"testmux_file_{path.stem}_{digest}"

    spec = importlib.util.spec_from_file_location(module_name, path)
    if spec is None or spec.loader is None:
        msg = f"Could not create module spec for: {path}"
        raise LoadError(msg)

    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module

    try:
        spec.loader.exec_module(module)
    except Exception as exc:
        sys.modules.pop(module_name, None)
        msg = f"Failed to import test file {path}: {exc}"
        raise LoadError(msg) from exc

    return _collect_module(module, file_path)
