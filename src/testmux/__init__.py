"""testmux: run test files concurrently across worker processes."""

from __future__ import annotations

from testmux._internal.config import TestmuxConfig, load_config
from testmux.engine.events import EventEmitter
from testmux.engine.protocol import Frame, RemoteException, RemoteSuite, RemoteTest
from testmux.engine.runner import TestRunner
from testmux.markers import pending
from testmux.results.models import RunSummary, WorkerFailure

__version__ = "0.1.0"

__all__ = [
    "EventEmitter",
    "Frame",
    "RemoteException",
    "RemoteSuite",
    "RemoteTest",
    "RunSummary",
    "TestRunner",
    "TestmuxConfig",
    "WorkerFailure",
    "load_config",
    "pending",
]
