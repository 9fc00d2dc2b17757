import re
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

DOSE_STATUSES = {"pending", "taken", "skipped", "missed"}
TERMINAL_STATUSES = {"taken", "skipped", "missed"}
CHECKOFF_STATUSES = {"taken", "skipped"}
GENERATED_BY = {"system", "manual"}

DEFAULT_DOSE_LABEL = "Dose"

# ==================== ERRORS ====================

class DoseEngineError(Exception):
    """Base class for dose engine failures."""

class ConflictError(DoseEngineError):
    pass

class NotFoundError(DoseEngineError):
    pass

class InvalidTransition(DoseEngineError):
    """Raised when a dose cannot move from its current status to the requested one."""

    def __init__(self, dose_id: Optional[str], current: Optional[str], requested: str):
        self.dose_id = dose_id
        self.current = current
        self.requested = requested
        super().__init__(f"Dose {dose_id or '<new>'} cannot move from {current or 'none'} to {requested}")

# ==================== MODELS ====================

def split_times_of_day(value) -> List[str]:
    """Accept either a list of labels or the legacy 'Morning, Evening' string."""
    if value is None:
        return []
    if isinstance(value, str):
        parts = re.split(r"[,;]+", value)
    else:
        parts = [str(item) for item in value if item is not None]
    return [p.strip() for p in parts if p and p.strip()]

class Medication(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str
    care_recipient_id: str
    name: str
    dosage: Optional[str] = None
    frequency: Optional[str] = None
    times_of_day: List[str] = []
    active: bool = True
    special_instructions: Optional[str] = None

    @field_validator("times_of_day", mode="before")
    @classmethod
    def _split_times(cls, value):
        return split_times_of_day(value)

class DoseLog(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str = Field(default_factory=lambda: f"dose_{uuid.uuid4().hex[:12]}")
    medication_id: str
    care_recipient_id: str
    scheduled_date: str  # YYYY-MM-DD
    dose_number: Optional[int] = None
    dose_label: str = DEFAULT_DOSE_LABEL
    status: str = "pending"
    scheduled_for: Optional[str] = None  # ISO datetime, None when due by end of day
    time_taken: Optional[str] = None
    notes: Optional[str] = None
    generated_by: str = "system"
    medication_name: Optional[str] = None
    dosage: Optional[str] = None
    created_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    updated_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @field_validator("status")
    @classmethod
    def _known_status(cls, value: str) -> str:
        cleaned = (value or "").strip().lower()
        if cleaned not in DOSE_STATUSES:
            raise ValueError(f"Unknown dose status: {value}")
        return cleaned

    @field_validator("generated_by")
    @classmethod
    def _known_origin(cls, value: str) -> str:
        cleaned = (value or "").strip().lower()
        if cleaned not in GENERATED_BY:
            raise ValueError(f"Unknown dose origin: {value}")
        return cleaned

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

# ==================== REQUEST BODIES ====================

class DoseCheckoff(BaseModel):
    notes: Optional[str] = None

class ManualDoseCreate(BaseModel):
    status: str = "taken"
    notes: Optional[str] = None
