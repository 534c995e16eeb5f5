"""Worker process supervision."""

from flotilla.supervisor.logs import DualLog, rotate_log
from flotilla.supervisor.process import ExitInfo, ProcessSupervisor, SpawnOptions, SupervisedProcess
from flotilla.supervisor.stream import EventKind, StreamEvent, condense_line, parse_stream_line

__all__ = [
    "DualLog",
    "EventKind",
    "ExitInfo",
    "ProcessSupervisor",
    "SpawnOptions",
    "StreamEvent",
    "SupervisedProcess",
    "condense_line",
    "parse_stream_line",
    "rotate_log",
]
