"""Request and response schemas for the UI surface."""

from typing import Optional

from pydantic import BaseModel, Field, field_validator


class AvatarVideoRequest(BaseModel):
    """Input for one avatar-video pipeline run."""

    images: list[str] = Field(..., min_length=1, description="Local paths or URLs of avatar photos")
    script: str = Field(..., min_length=1, description="Text the avatar speaks")
    voice_id: Optional[str] = Field(default=None, description="Explicit speech voice type")
    voice_style: Optional[str] = Field(default=None, description="Style keyword used when voice_id is absent")
    avatar_name: str = "Generated Avatar"
    title: str = "Avatar Video"
    speed: float = Field(default=1.0, gt=0.2, le=3.0)

    @field_validator("script")
    @classmethod
    def strip_script(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("script cannot be empty")
        return v


class BatchImage(BaseModel):
    """One still image for the image-to-video batch flow."""

    url: str
    filename: str


class BatchRequest(BaseModel):
    """A batch of image-to-video submissions admitted through the limiter."""

    prompt: str = Field(..., min_length=1)
    images: list[BatchImage] = Field(..., min_length=1)
    aspect_ratio: str = "16:9"
    duration: int = Field(default=5, ge=1, le=12)
    seed: int = -1


class AvatarImageRequest(BaseModel):
    """N independent avatar photo generations from one prompt."""

    prompt: str = Field(..., min_length=1)
    image_count: int = Field(default=4, ge=1, le=8)
    aspect_ratio: str = "16:9"
    reference_images: list[str] = Field(default_factory=list, description="http(s) URLs or data:image URIs")

    @field_validator("prompt")
    @classmethod
    def strip_prompt(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("prompt cannot be empty")
        return v


class GeneratedImage(BaseModel):
    task_id: str
    url: Optional[str] = None
    local_path: Optional[str] = None
    seed: Optional[int] = None


class AvatarImageReport(BaseModel):
    """Outcome of one avatar image request; some generations may fail."""

    requested: int
    images: list[GeneratedImage] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)

    @property
    def generated(self) -> int:
        return len(self.images)

    @property
    def is_partial(self) -> bool:
        return 0 < self.generated < self.requested


class CreateSessionRequest(BaseModel):
    name: str = ""


class SessionSummary(BaseModel):
    """Sidebar row for one stored session."""

    session_id: str
    name: str
    updated_at: str
    task_count: int
    run_count: int
    is_processing: bool


class RunStarted(BaseModel):
    session_id: str
    run_id: str


class BatchAccepted(BaseModel):
    session_id: str
    task_ids: list[str]
    dispatched: int
    queued: int
    failed: int


class CancelResponse(BaseModel):
    cancelled: bool
    detail: str = ""
