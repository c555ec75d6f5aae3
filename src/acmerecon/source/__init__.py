"""Desired-state sources."""

from acmerecon.source.base import ChangeEvent, DesiredStateSource, diff_requests, request_from_dict
from acmerecon.source.file import FileDesiredStateSource
from acmerecon.source.memory import MemoryDesiredStateSource
from acmerecon.source.registry import load_source

__all__ = [
    "ChangeEvent",
    "DesiredStateSource",
    "FileDesiredStateSource",
    "MemoryDesiredStateSource",
    "diff_requests",
    "load_source",
    "request_from_dict",
]
