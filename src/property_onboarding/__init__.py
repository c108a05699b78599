"""Property onboarding: wizard draft state and staged finalization."""

from .draft_store import DraftStore
from .orchestrator import FinalizationOrchestrator
from .step_graph import StepGraph
from .upload_batcher import UploadBatcher

__all__ = ["DraftStore", "FinalizationOrchestrator", "StepGraph", "UploadBatcher"]
