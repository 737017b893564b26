from pydantic import BaseModel, Field, model_validator
from typing import Optional, List, Dict, Any
from enum import Enum
from datetime import datetime
from dataclasses import dataclass, field, asdict


class ProjectStatus(str, Enum):
    """Pipeline position of a project."""
    CREATED = "CREATED"
    UPLOADING = "UPLOADING"
    ANALYZING = "ANALYZING"
    SHOWRUNNING = "SHOWRUNNING"
    NARRATING = "NARRATING"
    EDITING = "EDITING"
    EXPORTING = "EXPORTING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (ProjectStatus.COMPLETED, ProjectStatus.FAILED)

    @property
    def successor(self) -> Optional["ProjectStatus"]:
        """Next status on the success path, None for terminal states."""
        return _SUCCESSORS.get(self)

    def is_past(self, other: "ProjectStatus") -> bool:
        """True when this status comes after `other` on the success path."""
        if self not in _SUCCESS_PATH or other not in _SUCCESS_PATH:
            return False
        return _SUCCESS_PATH.index(self) > _SUCCESS_PATH.index(other)


_SUCCESS_PATH = [
    ProjectStatus.CREATED,
    ProjectStatus.UPLOADING,
    ProjectStatus.ANALYZING,
    ProjectStatus.SHOWRUNNING,
    ProjectStatus.NARRATING,
    ProjectStatus.EDITING,
    ProjectStatus.EXPORTING,
    ProjectStatus.COMPLETED,
]
_SUCCESSORS = dict(zip(_SUCCESS_PATH, _SUCCESS_PATH[1:]))


class JobState(str, Enum):
    """State of a queued stage job."""
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class ExportType(str, Enum):
    EPISODE = "episode"
    SHORT = "short"


class Project(BaseModel):
    id: str
    title: str
    style: str = "DRAMATIC"
    status: ProjectStatus = ProjectStatus.CREATED
    failure_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class Video(BaseModel):
    """An uploaded source video. Immutable once its metadata is extracted."""
    id: str
    project_id: str
    path: str
    filename: str = ""
    duration: float = 0.0
    resolution: str = ""
    fps: float = 0.0
    has_audio: bool = True
    uploaded_at: datetime = Field(default_factory=datetime.utcnow)


class Scene(BaseModel):
    """A contiguous, video-relative time range treated as one narrative unit."""
    id: str
    video_id: str
    project_id: str
    start_time: float = Field(ge=0)
    end_time: float
    importance_score: float = Field(default=0.5, ge=0, le=1)
    transcription: Optional[str] = None
    speakers: Optional[List[str]] = None
    emotions: Optional[List[str]] = None
    metadata: Optional[Dict[str, Any]] = None

    @model_validator(mode="after")
    def _check_range(self) -> "Scene":
        if self.end_time <= self.start_time:
            raise ValueError(
                f"Scene end_time ({self.end_time}) must be greater than start_time ({self.start_time})"
            )
        return self

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time


class NarrationClip(BaseModel):
    """Narration audio synthesized for one narration point."""
    id: str
    position: str = ""
    timing: float = 0.0
    text: str
    audio_path: str


class Narrative(BaseModel):
    project_id: str
    structure: Dict[str, Any]
    narrations: List[NarrationClip] = []
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class EditClip(BaseModel):
    scene_id: str
    video_id: str
    source_path: str
    start: float
    end: float
    act: str
    has_audio: bool = True

    @property
    def duration(self) -> float:
        return self.end - self.start


class EditPlan(BaseModel):
    project_id: str
    clips: List[EditClip] = []
    rough_cut_path: Optional[str] = None
    total_duration: float = 0.0
    created_at: datetime = Field(default_factory=datetime.utcnow)


class Export(BaseModel):
    id: str
    project_id: str
    type: ExportType
    filename: str
    path: str
    created_at: datetime = Field(default_factory=datetime.utcnow)


class JobStatusView(BaseModel):
    """Observable status of one stage job."""
    id: str
    stage: str
    state: JobState
    progress: int = Field(ge=0, le=100)
    attempts: int = 0
    data: Dict[str, Any] = {}
    result: Optional[Dict[str, Any]] = None
    failure_reason: Optional[str] = None


class ProjectStatusView(BaseModel):
    """Read model derived purely from Project.status."""
    project_id: str
    title: str
    status: ProjectStatus
    progress_percent: int
    estimated_seconds_remaining: int
    failure_reason: Optional[str] = None


# --- Internal Dataclass Models ---

@dataclass
class DetectedScene:
    """One scene as reported by the external detector."""
    start_time: float
    end_time: float
    importance_score: float = 0.5


@dataclass
class TranscriptSegment:
    """
    One transcriber segment. Times are absolute to the source video.

    Transient: consumed by the association step and then only kept inside
    Scene.metadata.
    """
    start: float
    end: float
    speaker: str
    text: str
    video_id: str = ""
    emotion: Optional[str] = None
    confidence: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        return {k: v for k, v in data.items() if v is not None}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TranscriptSegment":
        return cls(
            start=float(data.get("start", 0.0)),
            end=float(data.get("end", 0.0)),
            speaker=str(data.get("speaker", "")),
            text=str(data.get("text", "")),
            video_id=str(data.get("video_id", "")),
            emotion=data.get("emotion"),
            confidence=data.get("confidence"),
        )


@dataclass
class SceneTranscript:
    """Transcript data attributed to one scene."""
    scene_id: str
    transcription: str
    speakers: List[str]
    emotions: Optional[List[str]]
    segments: List[TranscriptSegment] = field(default_factory=list)

    @property
    def metadata(self) -> Dict[str, Any]:
        return {"transcriptions": [s.to_dict() for s in self.segments]}


@dataclass
class StageResult:
    """What a stage executor hands back to the dispatcher."""
    summary: Dict[str, Any] = field(default_factory=dict)
    next_payload: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"summary": self.summary, "next_payload": self.next_payload}
