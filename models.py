from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Any, Optional, Union


class StepType(Enum):
    PAGE_VIEW = "PAGE_VIEW"
    EVENT = "EVENT"
    CUSTOM = "CUSTOM"

    @classmethod
    def parse(cls, value: Union[str, "StepType"]) -> "StepType":
        """Accept enum members, values and the display spellings (PageView, page_view)"""
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().replace(" ", "_")
        aliases = {
            "PAGEVIEW": cls.PAGE_VIEW,
            "PAGE_VIEW": cls.PAGE_VIEW,
            "EVENT": cls.EVENT,
            "CUSTOM": cls.CUSTOM,
        }
        key = normalized.upper()
        if key not in aliases:
            raise ValueError(f"Unknown step type: {value}")
        return aliases[key]


class FilterField(Enum):
    EVENT_NAME = "event_name"
    PATH = "path"
    REFERRER = "referrer"
    USER_AGENT = "user_agent"
    IP_ADDRESS = "ip_address"
    COUNTRY = "country"
    CITY = "city"
    DEVICE_TYPE = "device_type"
    BROWSER = "browser"
    BROWSER_NAME = "browser_name"
    OS = "os"
    OS_NAME = "os_name"
    SCREEN_RESOLUTION = "screen_resolution"
    LANGUAGE = "language"
    UTM_SOURCE = "utm_source"
    UTM_MEDIUM = "utm_medium"
    UTM_CAMPAIGN = "utm_campaign"
    UTM_TERM = "utm_term"
    UTM_CONTENT = "utm_content"


class FilterOperator(Enum):
    EQUALS = "equals"
    CONTAINS = "contains"
    NOT_EQUALS = "not_equals"
    IN = "in"
    NOT_IN = "not_in"


ALLOWED_FIELDS = frozenset(f.value for f in FilterField)
ALLOWED_OPERATORS = frozenset(op.value for op in FilterOperator)

# Columns of the per-session first-occurrence frame returned by event stores
OCCURRENCE_COLUMNS = ["session_id", "step_number", "first_occurrence"]
REFERRER_COLUMN = "referrer"


@dataclass
class AnalysisConfig:
    """Configuration for funnel analysis"""

    default_range_days: int = 30
    max_workers: int = 4
    page_view_event: str = "screen_view"
    search_query_params: tuple[str, ...] = ("q", "query", "search")

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization"""
        return {
            "default_range_days": self.default_range_days,
            "max_workers": self.max_workers,
            "page_view_event": self.page_view_event,
            "search_query_params": list(self.search_query_params),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AnalysisConfig":
        """Create from dictionary for JSON deserialization"""
        return cls(
            default_range_days=data.get("default_range_days", 30),
            max_workers=data.get("max_workers", 4),
            page_view_event=data.get("page_view_event", "screen_view"),
            search_query_params=tuple(
                data.get("search_query_params", ("q", "query", "search"))
            ),
        )


@dataclass(frozen=True)
class Step:
    """One stage of a funnel, matched against page paths or event names"""

    index: int  # 1-based, defines the required order
    type: StepType
    target: str
    name: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "target": self.target, "name": self.name}


@dataclass(frozen=True)
class Filter:
    field: str
    operator: str
    value: Union[str, tuple[str, ...]]

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Filter":
        value = data.get("value", "")
        if isinstance(value, (list, tuple, set)):
            value = tuple(str(v) for v in value)
        return cls(field=data.get("field", ""), operator=data.get("operator", ""), value=value)

    def to_dict(self) -> dict[str, Any]:
        value = list(self.value) if isinstance(self.value, tuple) else self.value
        return {"field": self.field, "operator": self.operator, "value": value}


@dataclass(frozen=True)
class FunnelDefinition:
    """Immutable funnel (two or more steps) or goal (exactly one step) definition"""

    id: str
    name: str
    steps: tuple[Step, ...]
    filters: tuple[Filter, ...] = ()
    website_id: Optional[str] = None
    description: Optional[str] = None
    ignore_historic_data: bool = False
    created_at: Optional[datetime] = None
    is_active: bool = True

    @property
    def is_goal(self) -> bool:
        return len(self.steps) == 1

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization"""
        return {
            "id": self.id,
            "name": self.name,
            "website_id": self.website_id,
            "description": self.description,
            "steps": [step.to_dict() for step in self.steps],
            "filters": [f.to_dict() for f in self.filters],
            "ignore_historic_data": self.ignore_historic_data,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "is_active": self.is_active,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FunnelDefinition":
        """Create from dictionary; steps are numbered by their list position"""
        steps = tuple(
            Step(
                index=i + 1,
                type=StepType.parse(raw["type"]),
                target=raw["target"],
                name=raw.get("name") or raw["target"],
            )
            for i, raw in enumerate(data.get("steps", []))
        )
        created_at = data.get("created_at")
        if isinstance(created_at, str):
            created_at = datetime.fromisoformat(created_at)
        return cls(
            id=str(data["id"]),
            name=data.get("name", ""),
            steps=steps,
            filters=tuple(Filter.from_dict(f) for f in data.get("filters") or []),
            website_id=data.get("website_id"),
            description=data.get("description"),
            ignore_historic_data=bool(data.get("ignore_historic_data", False)),
            created_at=created_at,
            is_active=bool(data.get("is_active", True)),
        )


@dataclass(frozen=True)
class DateRange:
    """Inclusive calendar-day range; the end day runs through 23:59:59"""

    start_date: date
    end_date: date

    @classmethod
    def resolve(
        cls,
        start_date: Union[str, date, None] = None,
        end_date: Union[str, date, None] = None,
        default_days: int = 30,
        today: Optional[date] = None,
    ) -> "DateRange":
        """Build a range, falling back to the trailing default window if either bound is missing"""
        if start_date is None or end_date is None:
            today = today or date.today()
            return cls(today - timedelta(days=default_days), today)
        return cls(_as_date(start_date), _as_date(end_date))

    @property
    def start_datetime(self) -> datetime:
        return datetime.combine(self.start_date, time.min)

    @property
    def end_datetime(self) -> datetime:
        return datetime.combine(self.end_date, time(23, 59, 59))

    def clamp_start(self, earliest: date) -> "DateRange":
        if earliest > self.start_date:
            return DateRange(earliest, self.end_date)
        return self


def _as_date(value: Union[str, date]) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(value)


@dataclass
class StepAnalytics:
    """Per-step conversion metrics"""

    step_number: int
    step_name: str
    users: int
    total_users: int
    conversion_rate: float
    dropoffs: int
    dropoff_rate: float
    avg_time_to_complete: float = 0


@dataclass
class FunnelAnalyticsResult:
    """Results of funnel analysis"""

    overall_conversion_rate: float
    total_users_entered: int
    total_users_completed: int
    avg_completion_time: float
    avg_completion_time_formatted: str
    biggest_dropoff_step: int
    biggest_dropoff_rate: float
    steps_analytics: list[StepAnalytics]
    dropped_filters: list[Filter] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization"""
        data = asdict(self)
        data["dropped_filters"] = [f.to_dict() for f in self.dropped_filters]
        return data


@dataclass(frozen=True)
class ReferrerInfo:
    type: str
    name: str
    domain: str
    url: str = ""


DIRECT_REFERRER = ReferrerInfo(type="direct", name="Direct", domain="", url="")


@dataclass
class ReferrerGroup:
    """Funnel conversion for sessions sharing a canonical referrer domain"""

    referrer: str
    referrer_parsed: ReferrerInfo
    total_users: int
    completed_users: int
    conversion_rate: float


@dataclass
class ReferrerAnalyticsResult:
    referrer_analytics: list[ReferrerGroup]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class GoalAnalyticsResult:
    """Goal completions measured against every session that visited the site"""

    goal_name: str
    completions: int
    total_website_users: int
    conversion_rate: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
