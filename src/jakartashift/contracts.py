"""Public contract models shared by every jakartashift result."""

from typing import List, Optional

from pydantic import BaseModel

from jakartashift.codes import WarningCode


class WarningRecord(BaseModel):
    """A recoverable problem met during a run. Never aborts the run."""
    code: WarningCode
    message: str
    path: Optional[str] = None  # project-relative file the warning is about


class Readiness(BaseModel):
    """How far the project already is from the successor namespace."""
    score: float  # 0.0 - 1.0
    message: str


class RiskAssessment(BaseModel):
    level: str  # "low" | "medium" | "high"
    score: float = 0.0  # 0.0 - 1.0
    factors: List[str]  # human-readable, in a stable order


class ImpactSummary(BaseModel):
    """Size of the migration, for estimating effort."""
    files: int
    usages: int
    blockers: int
    recommendations: int
    estimated_minutes: int
    complexity: str  # "low" | "medium" | "high"
