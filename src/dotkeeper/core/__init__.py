"""Core functionality for dotkeeper."""

from .apply import ApplyEngine, ApplyOptions, ApplyReport, build_plan
from .capture import CaptureManager
from .config import Config
from .diff import DiffEngine, DiffEntry, DiffStatus
from .manifest import Manifest, ManifestEntry
from .snapshots import PruneCriteria, SnapshotStore

__all__ = [
    "ApplyEngine",
    "ApplyOptions",
    "ApplyReport",
    "CaptureManager",
    "Config",
    "DiffEngine",
    "DiffEntry",
    "DiffStatus",
    "Manifest",
    "ManifestEntry",
    "PruneCriteria",
    "SnapshotStore",
    "build_plan",
]
