"""
Snapshot and refresh status models.

A ConsolidatedSnapshot is built once per run and swapped in wholesale;
nothing mutates a published snapshot. These models are also the persisted
and HTTP representation, so they hold JSON-compatible data only.
"""
from typing import Any, Dict, List, Optional, Literal

from pydantic import BaseModel, Field

ContributionStatus = Literal["fresh", "cached", "fallback", "error"]
AreaStatus = Literal["ok", "partial", "unavailable"]


class SourceContribution(BaseModel):
    source: str
    endpoint: str
    status: ContributionStatus
    fetched_at: Optional[float] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None


class AreaResult(BaseModel):
    area: str
    status: AreaStatus
    data: Optional[Dict[str, Any]] = None
    quality: float = 0.0
    contributions: List[SourceContribution] = Field(default_factory=list)
    updated_at: Optional[float] = None
    issues: List[str] = Field(default_factory=list)


class RefreshError(BaseModel):
    source: str
    endpoint: Optional[str] = None
    area: Optional[str] = None
    message: str
    kind: str = "data_source_error"
    retryable: bool = True
    timestamp: float


class ConsolidatedSnapshot(BaseModel):
    version: int = 0
    areas: Dict[str, AreaResult] = Field(default_factory=dict)
    last_updated: Optional[float] = None
    data_quality: float = 0.0
    errors: List[RefreshError] = Field(default_factory=list)
    restored: bool = False
    unable_to_refresh: bool = False

    def contributions(self) -> Dict[str, List[str]]:
        """Which sources fed which area (successful contributions only)."""
        return {
            key: sorted({c.source for c in area.contributions if c.status != "error"})
            for key, area in self.areas.items()
        }


class PartialUpdate(BaseModel):
    """Result of consolidating a single area into the current snapshot"""
    area: AreaResult
    snapshot_version: int
    data_quality: float
    errors: List[RefreshError] = Field(default_factory=list)


class RefreshProgress(BaseModel):
    completed: int = 0
    total: int = 0
    current_area: Optional[str] = None

    @property
    def fraction(self) -> float:
        return self.completed / self.total if self.total else 0.0


class RefreshStatus(BaseModel):
    """Live refresh state; never persisted"""
    is_refreshing: bool = False
    progress: RefreshProgress = Field(default_factory=RefreshProgress)
    errors: List[RefreshError] = Field(default_factory=list)
    last_successful_refresh: Optional[float] = None
    last_refresh: Optional[float] = None
    next_refresh: Optional[float] = None
    online: bool = True
    unable_to_refresh: bool = False
    run_count: int = 0
