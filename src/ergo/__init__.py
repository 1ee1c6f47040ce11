"""
Ergo - a file-backed task and epic backlog for concurrent agents.

All state lives in an append-only event log under `.ergo/`. Every invocation
is a fresh process that reads the log, replays it into a graph, validates a
change against that graph under an exclusive lock, and appends new events.
"""

__version__ = "0.4.0"

from ergo.errors import ErgoError, LockBusyError, NoReadyWorkError
from ergo.store import Store

__all__ = ["ErgoError", "LockBusyError", "NoReadyWorkError", "Store", "__version__"]
