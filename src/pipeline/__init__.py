"""Background processing components for the knowledge ingestion pipeline."""

from src.pipeline.progress_tracker import ProgressTracker
from src.pipeline.supervisor import ProcessingSupervisor

__all__ = [
    "ProcessingSupervisor",
    "ProgressTracker",
]
