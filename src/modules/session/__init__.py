"""
Session Module

Per-session pipeline state and the in-memory registry that holds it.
"""

from src.modules.session.models import (
    SessionState,
    SourceFile,
    NormalizedImage,
    PipelineResult,
    PipelineStatus,
)

__all__ = ["SessionState", "SourceFile", "NormalizedImage", "PipelineResult", "PipelineStatus"]
