from conductor.checkpoints.models import SCHEMA_VERSION, Checkpoint
from conductor.checkpoints.restoration import RestorationService, RestoredTask
from conductor.checkpoints.service import CheckpointService
from conductor.checkpoints.store import CheckpointStore

__all__ = [
    "SCHEMA_VERSION",
    "Checkpoint",
    "CheckpointService",
    "CheckpointStore",
    "RestorationService",
    "RestoredTask",
]
