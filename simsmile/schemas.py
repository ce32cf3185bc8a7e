"""Pydantic models for pipeline records and request/response schemas."""
import re
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .config import SIMULATION_UNAVAILABLE_WARNING

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_PATTERN = re.compile(r"^(\+56)?[2-9]\d{8}$")


# --- Steps ---

class Step(str, Enum):
    """Controller steps. Inherits str so responses carry the plain name."""
    ENTRY = "entry"
    CAPTURING = "capturing"
    PROCESSING = "processing"
    AWAITING_CONTACT = "awaiting_contact"
    RESULTS = "results"


# --- Landmarks ---

class Landmark(BaseModel):
    """Normalized facial reference point."""
    model_config = ConfigDict(frozen=True)

    index: int
    name: Optional[str] = None
    x: float
    y: float
    z: float = 0.0


class Detection(BaseModel):
    """Outcome of one landmark detection call."""
    model_config = ConfigDict(frozen=True)

    status: Literal["detected", "unavailable", "no_face"]
    landmarks: Optional[List[Landmark]] = None

    @property
    def found(self) -> bool:
        return self.status == "detected" and bool(self.landmarks)


class QualityReport(BaseModel):
    """Advisory image quality check."""
    acceptable: bool
    issues: List[str] = Field(default_factory=list)


# --- Metrics ---

class GingivalDisplay(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    mm: float
    class_: Literal["baja", "media", "alta"] = Field(..., alias="class")


class MidlineDeviation(BaseModel):
    model_config = ConfigDict(frozen=True)

    mm: float
    side: Literal["centrado", "izquierda", "derecha"]


class MidlineCoincidence(BaseModel):
    model_config = ConfigDict(frozen=True)

    deviation: float
    status: Literal["coincidente", "desviada"]


class FacialProportions(BaseModel):
    model_config = ConfigDict(frozen=True)

    upperThird: float
    middleThird: float
    lowerThird: float
    isBalanced: bool


class MetricsRecord(BaseModel):
    """Dental and facial measurements, real or fallback, always this shape."""
    model_config = ConfigDict(frozen=True)

    smileArc: Literal["consonante", "plana", "invertida"]
    gingival: GingivalDisplay
    midline: MidlineDeviation
    buccalRatio: float = Field(..., ge=0.0, le=1.0)
    facialMidline: MidlineDeviation
    midlineCoincidence: MidlineCoincidence
    facialProportions: FacialProportions


class FaceAnalysis(BaseModel):
    """Facial characteristics derived from a MetricsRecord."""
    model_config = ConfigDict(frozen=True)

    harmonyScore: int = Field(..., ge=0, le=100)
    smileArcAssessment: Literal["ideal", "mejorable", "desfavorable"]
    gingivalProfile: Literal["baja", "media", "alta"]
    midlineStatus: Literal["centrada", "desviada"]
    buccalCorridor: Literal["amplio", "ideal", "estrecho"]
    facialBalance: str
    strengths: List[str] = Field(default_factory=list)
    concerns: List[str] = Field(default_factory=list)


class Recommendation(BaseModel):
    model_config = ConfigDict(frozen=True)

    area: str
    priority: Literal["alta", "media", "baja"]
    title: str
    detail: str


class Recommendations(BaseModel):
    model_config = ConfigDict(frozen=True)

    items: List[Recommendation] = Field(default_factory=list)
    treatments: List[str] = Field(default_factory=list)
    overallPriority: Literal["alta", "media", "baja"] = "baja"


# --- Simulation ---

class SimulationResult(BaseModel):
    """Remote simulation outcome: full payload or the unavailable marker."""
    model_config = ConfigDict(frozen=True)

    available: bool
    simulatedImage: Optional[str] = None
    idealImage: Optional[str] = None
    facialAnalysis: Optional[Dict[str, Any]] = None
    qualityScore: Optional[float] = None
    warnings: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_shape(self):
        if self.available and not self.simulatedImage:
            raise ValueError("available simulation requires simulatedImage")
        if not self.available and any(
            v is not None
            for v in (self.simulatedImage, self.idealImage, self.facialAnalysis, self.qualityScore)
        ):
            raise ValueError("unavailable simulation cannot carry a payload")
        return self

    @classmethod
    def unavailable(cls) -> "SimulationResult":
        return cls(available=False, warnings=[SIMULATION_UNAVAILABLE_WARNING])


# --- Contact ---

class ContactData(BaseModel):
    """Contact record submitted after processing."""
    model_config = ConfigDict(frozen=True)

    email: str
    name: Optional[str] = None
    phone: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        value = value.strip()
        if not EMAIL_PATTERN.match(value):
            raise ValueError("Invalid email address")
        return value

    @field_validator("phone")
    @classmethod
    def _validate_phone(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        compact = re.sub(r"\s", "", value)
        if not PHONE_PATTERN.match(compact):
            raise ValueError("Invalid phone number")
        return compact

    @field_validator("name")
    @classmethod
    def _sanitize_name(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = re.sub(r"[<>]", "", value)
        value = re.sub(r"javascript:", "", value, flags=re.IGNORECASE)
        value = re.sub(r"on\w+\s*=", "", value, flags=re.IGNORECASE)
        return value.strip() or None


# --- Notices ---

class Notice(BaseModel):
    """User-visible message, optionally with a retry affordance."""
    model_config = ConfigDict(frozen=True)

    level: Literal["info", "success", "warning", "error"]
    message: str
    action: Optional[Literal["retry_capture", "retry_face_analyzer"]] = None


# --- Run & controller state ---

class PipelineRun(BaseModel):
    """Everything one capture attempt produced."""
    model_config = ConfigDict(frozen=True)

    restImage: str
    smileImage: str
    fingerprint: str
    retryCount: int = Field(0, ge=0)

    optimizedRest: Optional[str] = None
    optimizedSmile: Optional[str] = None
    restLandmarks: Optional[List[Landmark]] = None
    smileLandmarks: Optional[List[Landmark]] = None
    qualityWarnings: List[str] = Field(default_factory=list)

    metrics: Optional[MetricsRecord] = None
    faceAnalysis: Optional[FaceAnalysis] = None
    recommendations: Optional[Recommendations] = None
    analysisText: Optional[str] = None

    simulation: Optional[SimulationResult] = None
    idealImage: Optional[str] = None
    resultSmileImage: Optional[str] = None

    contact: Optional[ContactData] = None
    processingTimeMs: Optional[int] = Field(None, ge=0)


class ControllerState(BaseModel):
    """Inspectable controller value: current step plus attached run."""
    model_config = ConfigDict(frozen=True)

    step: Step = Step.ENTRY
    processing: bool = False
    run: Optional[PipelineRun] = None
    retryAvailable: bool = False
    terminalFailure: bool = False
    lastError: Optional[str] = None


# --- HTTP ---

class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    face_analyzer_available: bool
    uptime_seconds: float


class CaptureRequest(BaseModel):
    """Two base64-encoded photographs."""
    restImage: str = Field(..., min_length=1)
    smileImage: str = Field(..., min_length=1)


class SimulationSummary(BaseModel):
    facialAnalysis: Optional[Dict[str, Any]] = None
    qualityScore: Optional[float] = None
    warnings: List[str] = Field(default_factory=list)


class StateResponse(BaseModel):
    """Controller state as the presentation layer renders it."""
    step: Step
    processing: bool
    progress: int
    retryAvailable: bool
    terminalFailure: bool
    lastError: Optional[str] = None
    retryCount: int = 0
    restImage: Optional[str] = None
    smileImage: Optional[str] = None
    idealImage: Optional[str] = None
    analysis: Optional[str] = None
    metrics: Optional[MetricsRecord] = None
    landmarks: Optional[List[Landmark]] = None
    simulation: Optional[SimulationSummary] = None
    qualityWarnings: List[str] = Field(default_factory=list)
    contactEmail: Optional[str] = None


class NoticesResponse(BaseModel):
    notices: List[Notice] = Field(default_factory=list)
