"""Domain models for tuning jobs and autotune analysis outcomes."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time
from enum import Enum
from typing import Any

from nightscout_tuner.jobs.errors import JobErrorKind


class JobState(str, Enum):
    """Durable job lifecycle states."""

    SUBMITTED = "submitted"
    PROCESSING = "processing"
    SUCCESS = "success"
    ERROR = "error"


ACTIVE_STATES = frozenset({JobState.SUBMITTED, JobState.PROCESSING})
TERMINAL_STATES = frozenset({JobState.SUCCESS, JobState.ERROR})


class FailureReason(str, Enum):
    """Reason codes persisted for jobs that end in the error state."""

    VERIFICATION_FAILED = "NS_SITE_VERIFICATION_FAILED"
    TOOL_FAILED = "AUTOTUNE_FAILED"
    CANCELLED = "CANCELLED"
    STALE = "STALE"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class RecommendationKind(str, Enum):
    """Profile parameter a recommendation applies to."""

    ISF = "ISF"
    CARB_RATIO = "CarbRatio"
    BASAL = "Basal"


@dataclass(slots=True, frozen=True)
class JobSettings:
    """Autotune settings captured at submission time."""

    autosens_min: float
    autosens_max: float
    profile_name: str
    min_5m_carbimpact: int
    pump_basal_increment: float
    uam_as_basal: bool
    insulin_type: str
    autotune_days: int
    oaps_profile: dict[str, Any]
    email_address: str | None = None

    @property
    def time_zone(self) -> str:
        value = self.oaps_profile.get("timezone")
        return value if isinstance(value, str) and value else "UTC"

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> JobSettings:
        return cls(
            autosens_min=float(payload["autosens_min"]),
            autosens_max=float(payload["autosens_max"]),
            profile_name=str(payload["profile_name"]),
            min_5m_carbimpact=int(payload["min_5m_carbimpact"]),
            pump_basal_increment=float(payload["pump_basal_increment"]),
            uam_as_basal=bool(payload["uam_as_basal"]),
            insulin_type=str(payload["insulin_type"]),
            autotune_days=int(payload["autotune_days"]),
            oaps_profile=dict(payload["oaps_profile"]),
            email_address=payload.get("email_address"),
        )


@dataclass(slots=True, frozen=True)
class Submission:
    """Validated request to tune the profile of one Nightscout site."""

    endpoint: str
    settings: JobSettings
    access_token: str | None = None


@dataclass(slots=True, frozen=True)
class JobMeta:
    """Job status summary returned by status queries."""

    job_id: str
    state: JobState
    submitted_at: datetime


@dataclass(slots=True)
class JobView:
    """Full job row for workers and inspection."""

    job_id: str
    endpoint: str
    state: JobState
    submission: Submission
    submitted_at: datetime
    started_at: datetime | None
    done_at: datetime | None
    failure_reason: FailureReason | None


@dataclass(slots=True, frozen=True)
class JobFailureDetails:
    """Persisted diagnostic for a job that ended in the error state."""

    job_id: str
    reason: FailureReason
    exit_code: int | None
    diagnostic: str | None
    created_at: datetime


@dataclass(slots=True, frozen=True)
class Recommendation:
    """One tuned parameter suggestion from the autotune log."""

    kind: RecommendationKind
    current_value: float
    recommended_value: float
    rounded_recommendation: float
    time_of_day: time | None = None
    days_missing: int | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "kind": self.kind.value,
            "current_value": self.current_value,
            "recommended_value": self.recommended_value,
            "rounded_recommendation": self.rounded_recommendation,
        }
        if self.kind == RecommendationKind.BASAL:
            payload["time_of_day"] = (
                self.time_of_day.strftime("%H:%M") if self.time_of_day is not None else None
            )
            payload["days_missing"] = self.days_missing
        return payload

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> Recommendation:
        raw_time = payload.get("time_of_day")
        return cls(
            kind=RecommendationKind(payload["kind"]),
            current_value=float(payload["current_value"]),
            recommended_value=float(payload["recommended_value"]),
            rounded_recommendation=float(payload["rounded_recommendation"]),
            time_of_day=time.fromisoformat(raw_time) if raw_time else None,
            days_missing=payload.get("days_missing"),
        )


@dataclass(slots=True, frozen=True)
class AutotuneOptions:
    """Options used for one autotune run."""

    job_id: str
    endpoint: str
    date_from: date
    date_to: date
    uam_as_basal: bool
    autotune_version: str
    time_zone: str

    def to_payload(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "endpoint": self.endpoint,
            "date_from": self.date_from.isoformat(),
            "date_to": self.date_to.isoformat(),
            "uam_as_basal": self.uam_as_basal,
            "autotune_version": self.autotune_version,
            "time_zone": self.time_zone,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> AutotuneOptions:
        return cls(
            job_id=str(payload["job_id"]),
            endpoint=str(payload["endpoint"]),
            date_from=date.fromisoformat(payload["date_from"]),
            date_to=date.fromisoformat(payload["date_to"]),
            uam_as_basal=bool(payload["uam_as_basal"]),
            autotune_version=str(payload["autotune_version"]),
            time_zone=str(payload["time_zone"]),
        )


@dataclass(slots=True, frozen=True)
class AutotuneResult:
    """Recommendations parsed from one autotune run, with the options that produced them."""

    recommendations: tuple[Recommendation, ...]
    options: AutotuneOptions

    def find_isf(self) -> Recommendation | None:
        """First insulin sensitivity factor recommendation, if any."""

        return self._first(RecommendationKind.ISF)

    def find_carb_ratio(self) -> Recommendation | None:
        """First carb ratio recommendation, if any."""

        return self._first(RecommendationKind.CARB_RATIO)

    def find_basal(self) -> list[Recommendation]:
        """All basal recommendations in log order."""

        return [item for item in self.recommendations if item.kind == RecommendationKind.BASAL]

    def _first(self, kind: RecommendationKind) -> Recommendation | None:
        return next((item for item in self.recommendations if item.kind == kind), None)


@dataclass(slots=True, frozen=True)
class AnalysisSucceeded:
    """Autotune finished and its log was parsed."""

    job_id: str
    result: AutotuneResult


@dataclass(slots=True, frozen=True)
class AnalysisFailed:
    """Autotune could not produce recommendations."""

    job_id: str
    reason: FailureReason
    exit_code: int | None = None
    diagnostic: str = ""
    timed_out: bool = False


AnalysisOutcome = AnalysisSucceeded | AnalysisFailed


@dataclass(slots=True, frozen=True)
class ValidationIssue:
    """One structural or range problem found in a submission payload."""

    path: str
    message: str

    def __str__(self) -> str:
        return f"{self.path}: {self.message}"


@dataclass(slots=True)
class SubmissionResult:
    """Outcome of one submission: accepted job id or a typed rejection."""

    job_id: str | None
    rejection: JobErrorKind | None = None
    message: str | None = None
    errors: list[ValidationIssue] = field(default_factory=list)

    @property
    def accepted(self) -> bool:
        return self.rejection is None
