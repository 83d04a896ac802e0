"""
Session Models for the Cartoonizer Pipeline

One SessionState per client session holds:
- The selected source file and its normalized form
- One PipelineResult per completed stage
- The PipelineStatus the client polls
- Transient notifications (success / error toasts)
"""

import uuid
from enum import Enum
from collections import deque
from datetime import datetime
from typing import Optional, Deque

from pydantic import BaseModel, ConfigDict, Field


class PipelineStage(str, Enum):
    """Pipeline stages."""
    BACKGROUND_REMOVAL = "background_removal"
    STYLIZATION = "stylization"


class FailedStage(str, Enum):
    """Stage named by lastFailedStage."""
    NONE = "none"
    BACKGROUND_REMOVAL = "background_removal"
    STYLIZATION = "stylization"


class PipelineState(str, Enum):
    """Pipeline state machine states."""
    IDLE = "idle"
    REMOVING_BACKGROUND = "removing_background"
    BG_READY = "bg_ready"
    BG_FAILED = "bg_failed"
    STYLIZING = "stylizing"
    STYLIZED = "stylized"
    STYLE_FAILED = "style_failed"


class ArtifactKind(str, Enum):
    """Download labels, used as the file name prefix."""
    BG_REMOVED = "bg-removed"
    CARTOON = "cartoon"


class NotificationLevel(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    INFO = "info"


class SourceFile(BaseModel):
    """A user-selected file. Replaced wholesale, never mutated."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    filename: str
    content_type: str = ""
    data: bytes = Field(repr=False)

    @property
    def size(self) -> int:
        return len(self.data)


class NormalizedImage(SourceFile):
    """
    A SourceFile guaranteed to be a decodable raster image under the size
    ceiling. ``width``/``height`` come from a read-only probe.
    """
    width: int
    height: int


class PipelineResult(BaseModel):
    """Output artifact of a completed stage."""
    model_config = ConfigDict(frozen=True)

    stage: PipelineStage
    reference: str
    data: Optional[bytes] = Field(default=None, repr=False)
    content_type: str = "image/png"
    width: Optional[int] = None
    height: Optional[int] = None
    source_id: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class PipelineStatus(BaseModel):
    """Single source of truth the client reads."""
    currently_running: bool = False
    last_failed_stage: FailedStage = FailedStage.NONE
    progress_percent: int = Field(default=0, ge=0, le=100)


class Notification(BaseModel):
    """A transient message for the client (toast)."""
    level: NotificationLevel
    message: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class SessionState:
    """
    Mutable state of one session. Owned by exactly one PipelineStateMachine.
    """

    def __init__(self, session_id: Optional[str] = None, max_notifications: int = 50):
        self.session_id = session_id or str(uuid.uuid4())
        self.source: Optional[SourceFile] = None
        self.image: Optional[NormalizedImage] = None
        self.background_removed: Optional[PipelineResult] = None
        self.stylized: Optional[PipelineResult] = None
        self.status = PipelineStatus()
        self.state = PipelineState.IDLE
        self.notifications: Deque[Notification] = deque(maxlen=max_notifications)
        self.created_at = datetime.utcnow()

    def notify(self, level: NotificationLevel, message: str) -> Notification:
        notification = Notification(level=level, message=message)
        self.notifications.append(notification)
        return notification

    def drain_notifications(self) -> list:
        drained = list(self.notifications)
        self.notifications.clear()
        return drained
