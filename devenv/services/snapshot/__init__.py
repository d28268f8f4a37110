"""
Snapshot lifecycle: generation, publication, staging and restore.
"""

from .backup import VeleroClient
from .generator import SnapshotGenerator, load_definitions
from .lock import SnapshotLockRegistry
from .models import (
    LocalSnapshot,
    S3Config,
    SnapshotGenerateConfig,
    SnapshotHandoff,
    SnapshotLock,
    SnapshotLockChannel,
    SnapshotLockListItem,
    SnapshotTarget,
    StagerConfig,
)
from .provision import SnapshotProvisioner
from .restore import RestoreOrchestrator, reconcile_app_registry
from .stager import SnapshotStager, read_handoff

__all__ = [
    "VeleroClient",
    "SnapshotGenerator",
    "load_definitions",
    "SnapshotLockRegistry",
    "LocalSnapshot",
    "S3Config",
    "SnapshotGenerateConfig",
    "SnapshotHandoff",
    "SnapshotLock",
    "SnapshotLockChannel",
    "SnapshotLockListItem",
    "SnapshotTarget",
    "StagerConfig",
    "SnapshotProvisioner",
    "RestoreOrchestrator",
    "reconcile_app_registry",
    "SnapshotStager",
    "read_handoff",
]
