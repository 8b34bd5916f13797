"""
Pydantic models for the Lead Import Worker
Job payloads, candidate records and job outcomes are defined here
"""
from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import List, Optional, Dict, Any
from datetime import datetime, timezone


# ============ LEAD MODELS ============

VALID_GENDERS = ("Male", "Female", "Other")


class CandidateLead(BaseModel):
    """A lead row built by the upload handler, validated once at enqueue time."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    clinic_id: Optional[str] = Field(default=None, alias="clinicId")
    name: str
    phone: str
    email: Optional[str] = None
    gender: str = "Male"
    age: Optional[int] = None
    treatments: List[Dict[str, Any]] = []
    source: str = "Instagram"
    custom_source: Optional[str] = Field(default=None, alias="customSource")
    offer_tag: Optional[str] = Field(default=None, alias="offerTag")
    status: str = "New"
    custom_status: Optional[str] = Field(default=None, alias="customStatus")
    notes: List[Dict[str, Any]] = []
    follow_ups: List[Dict[str, Any]] = Field(default=[], alias="followUps")
    assigned_to: List[Dict[str, Any]] = Field(default=[], alias="assignedTo")
    segments: List[str] = []

    @field_validator("name", "phone", mode="before")
    @classmethod
    def required_text(cls, value):
        text = str(value).strip() if value is not None else ""
        if not text:
            raise ValueError("must not be empty")
        return text

    @field_validator("gender", mode="before")
    @classmethod
    def normalize_gender(cls, value):
        # "female" contains "male", so check it first
        lowered = str(value or "").strip().lower()
        if "female" in lowered:
            return "Female"
        if "other" in lowered:
            return "Other"
        return "Male"

    @field_validator("age", mode="before")
    @classmethod
    def plausible_age(cls, value):
        try:
            age = int(value)
        except (TypeError, ValueError):
            return None
        return age if 0 < age < 150 else None

    def to_document(self) -> Dict[str, Any]:
        """Shape stored in the leads collection (camelCase, like the rest of the app)."""
        doc = self.model_dump(by_alias=True, exclude_none=True)
        doc["created_at"] = datetime.now(timezone.utc)
        return doc


class ImportJobPayload(BaseModel):
    leads_to_insert: List[CandidateLead] = []
    segment_id: Optional[str] = None


class ImportSummary(BaseModel):
    total_processed: int = 0
    total_inserted: int = 0
    total_failed: int = 0
    resumed_from: int = 0
    segment_id: Optional[str] = None
    segment_name: Optional[str] = None


# ============ TEMPLATE MODELS ============

class TemplateSyncPayload(BaseModel):
    clinic_id: str
    waba_id: str
    access_token: str
    page_size: int = 100


class TemplateSyncSummary(BaseModel):
    pages: int = 0
    fetched: int = 0
    inserted: int = 0
    skipped: int = 0
    failed: int = 0


# ============ JOB MODELS ============

class JobHandle(BaseModel):
    job_id: str
    name: str


class JobOutcome(BaseModel):
    """Terminal result of one job attempt: ok with a summary, or an error."""
    ok: bool
    summary: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    cancelled: bool = False

    @classmethod
    def success(cls, summary: BaseModel) -> "JobOutcome":
        return cls(ok=True, summary=summary.model_dump())

    @classmethod
    def failure(cls, error: str, cancelled: bool = False) -> "JobOutcome":
        return cls(ok=False, error=error, cancelled=cancelled)
