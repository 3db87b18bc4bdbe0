"""Records returned by the services and the inputs they accept.

Each record doubles as the row schema of the query that produces it: the
SELECT lists alias their columns to these field names.
"""

from __future__ import annotations

import datetime
import re
from typing import Annotated, Generic, List, Literal, Optional, Type, TypeVar

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from errors import ValidationError, first_validation_error

WeightUnit = Literal["kg", "lbs"]
TimeOfDay = Literal["morning", "afternoon", "evening"]
WeekStart = Literal["monday", "sunday"]
Locale = Literal["en", "ko"]

WEIGHT_MAX = 1000.0
REPS_MAX = 999
DEFAULT_TAG_COLOR = "#007AFF"

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

M = TypeVar("M", bound=BaseModel)
T = TypeVar("T")


def is_valid_date(value: str) -> bool:
    if not isinstance(value, str) or not _DATE_RE.match(value):
        return False
    try:
        datetime.date.fromisoformat(value)
    except ValueError:
        return False
    return True


def validate_date(value: str, field: str = "date") -> str:
    if not is_valid_date(value):
        raise ValidationError("Invalid date format. Use YYYY-MM-DD", field, value)
    return value


def parse_input(model: Type[M], data) -> M:
    """Validate service input, raising the application ``ValidationError``."""
    if isinstance(data, model):
        return data
    if isinstance(data, BaseModel):
        data = data.model_dump(exclude_unset=True)
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        raise first_validation_error(e) from e


class Tag(BaseModel):
    id: int
    name: str
    color: str
    created_at: str


class Exercise(BaseModel):
    id: int
    name: str
    notes: Optional[str] = None
    default_weight: Optional[float] = None
    default_reps: Optional[int] = None
    unit: WeightUnit = "kg"
    is_favorite: bool = False
    tags: List[Tag] = Field(default_factory=list)
    created_at: str
    updated_at: str


class WorkoutSession(BaseModel):
    id: int
    date: str
    time_of_day: Optional[TimeOfDay] = None
    duration_minutes: Optional[int] = None
    notes: Optional[str] = None
    created_at: str


class SessionWithStats(WorkoutSession):
    set_count: int = 0
    exercise_names: List[str] = Field(default_factory=list)
    exercise_ids: List[int] = Field(default_factory=list)
    total_volume: float = 0.0


class WorkoutSet(BaseModel):
    id: int
    session_id: int
    exercise_id: int
    exercise_name: Optional[str] = None
    weight: float
    reps: int
    is_warmup: bool = False
    is_failure: bool = False
    rest_duration: Optional[int] = None
    notes: Optional[str] = None
    set_order: int
    created_at: str


class RecentExercise(BaseModel):
    exercise_id: int
    exercise_name: str
    last_used: str
    use_count: int
    last_weight: Optional[float] = None
    last_reps: Optional[int] = None


class Profile(BaseModel):
    id: int
    name: str
    weight_unit: WeightUnit = "kg"
    week_starts_on: WeekStart = "monday"
    locale: Locale = "en"
    timezone: str = "UTC"
    default_rest_timer: int = 90
    auto_backup_enabled: bool = False
    created_at: str
    updated_at: str


class WorkoutStats(BaseModel):
    total_sessions: int = 0
    total_sets: int = 0
    total_volume: float = 0.0
    total_duration: int = 0
    average_session_duration: float = 0.0
    workout_days: int = 0


class DayFrequency(BaseModel):
    day_of_week: int
    count: int


class ExerciseFilter(BaseModel):
    model_config = ConfigDict(extra="forbid")

    search_query: Optional[str] = None
    tag_ids: Optional[List[int]] = None
    favorites_only: bool = False

    @field_validator("search_query")
    @classmethod
    def _blank_search(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            return None
        return v

    @field_validator("tag_ids")
    @classmethod
    def _normalize_tags(cls, v: Optional[List[int]]) -> Optional[List[int]]:
        if not v:
            return None
        return sorted(set(v))

    def is_empty(self) -> bool:
        return not self.search_query and not self.tag_ids and not self.favorites_only


def _clean_name(v: str) -> str:
    v = v.strip()
    if not v:
        raise ValueError("name cannot be empty")
    return v


Name = Annotated[str, AfterValidator(_clean_name)]


class ExerciseCreate(BaseModel):
    name: Name
    notes: Optional[str] = None
    default_weight: Optional[float] = Field(default=None, ge=0, le=WEIGHT_MAX)
    default_reps: Optional[int] = Field(default=None, ge=0, le=REPS_MAX)
    unit: WeightUnit = "kg"
    tag_ids: List[int] = Field(default_factory=list)


class ExerciseUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[Name] = None
    notes: Optional[str] = None
    default_weight: Optional[float] = Field(default=None, ge=0, le=WEIGHT_MAX)
    default_reps: Optional[int] = Field(default=None, ge=0, le=REPS_MAX)
    unit: Optional[WeightUnit] = None
    is_favorite: Optional[bool] = None
    tag_ids: Optional[List[int]] = None


class TagCreate(BaseModel):
    name: Name
    color: str = DEFAULT_TAG_COLOR


class TagUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[Name] = None
    color: Optional[str] = None


class SetInput(BaseModel):
    exercise_id: int
    weight: float = Field(ge=0, le=WEIGHT_MAX)
    reps: int = Field(ge=0, le=REPS_MAX)
    is_warmup: bool = False
    is_failure: bool = False
    rest_duration: Optional[int] = Field(default=None, ge=0)
    notes: Optional[str] = None


class SetUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    weight: Optional[float] = Field(default=None, ge=0, le=WEIGHT_MAX)
    reps: Optional[int] = Field(default=None, ge=0, le=REPS_MAX)
    is_warmup: Optional[bool] = None
    is_failure: Optional[bool] = None
    rest_duration: Optional[int] = Field(default=None, ge=0)
    notes: Optional[str] = None


class SessionUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    date: Optional[str] = None
    time_of_day: Optional[TimeOfDay] = None
    duration_minutes: Optional[int] = Field(default=None, ge=0)
    notes: Optional[str] = None

    @field_validator("date")
    @classmethod
    def _check_date(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not is_valid_date(v):
            raise ValueError("Invalid date format. Use YYYY-MM-DD")
        return v


class ProfileUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[Name] = None
    weight_unit: Optional[WeightUnit] = None
    week_starts_on: Optional[WeekStart] = None
    locale: Optional[Locale] = None
    timezone: Optional[str] = None
    default_rest_timer: Optional[int] = Field(default=None, ge=0)
    auto_backup_enabled: Optional[bool] = None


class PaginationParams(BaseModel):
    page: int = Field(default=0, ge=0)
    page_size: int = Field(default=50, ge=1, le=200)

    @property
    def offset(self) -> int:
        return self.page * self.page_size


class PaginatedResult(BaseModel, Generic[T]):
    items: List[T]
    page: int
    page_size: int
    total_items: int
    total_pages: int
    has_next: bool
    has_prev: bool

    @classmethod
    def build(cls, items: List[T], params: PaginationParams, total_items: int) -> "PaginatedResult[T]":
        total_pages = -(-total_items // params.page_size)
        return cls(
            items=items,
            page=params.page,
            page_size=params.page_size,
            total_items=total_items,
            total_pages=total_pages,
            has_next=params.page < total_pages - 1,
            has_prev=params.page > 0,
        )


def changes_of(payload: BaseModel, *required: str) -> dict:
    """Fields explicitly set on an update payload.

    ``required`` names columns that may be changed but never cleared.
    """
    fields = payload.model_dump(exclude_unset=True)
    for name in required:
        if name in fields and fields[name] is None:
            raise ValidationError(f"{name} cannot be null", name)
    return fields
