"""Domain models for derived metrics."""

from dataclasses import dataclass
from datetime import date


@dataclass(frozen=True)
class PriorityInputs:
    """User-rated task dimensions, each on a 0-10 scale."""

    urgency: float = 5
    importance: float = 5
    effort: float = 5
    impact: float = 5
    duration_minutes: int = 30


@dataclass(frozen=True)
class PriorityBreakdown:
    """Completed task counts per priority label."""

    critical: int
    high: int
    medium: int
    low: int


@dataclass(frozen=True)
class DailyActivity:
    """Whether any work was completed on a day."""

    day: date
    has_completed_work: bool


@dataclass(frozen=True)
class StreakState:
    """Current and best run of active days."""

    current_streak: int
    best_streak: int


@dataclass(frozen=True)
class DailyStats:
    """Task and journal totals for one day."""

    day: date
    tasks_completed: int
    total_tasks: int
    completion_rate: int
    total_points: float
    time_spent: int
    journal_entry: bool


@dataclass(frozen=True)
class PeriodComparison:
    """A value for the current period next to the previous one."""

    this_week: float
    last_week: float


@dataclass(frozen=True)
class WeeklyComparison:
    """Week-over-week task figures."""

    tasks: PeriodComparison
    points: PeriodComparison
    time_hours: PeriodComparison


@dataclass(frozen=True)
class MonthlyTaskStats:
    """Month-to-date completion figures."""

    total_points: float
    total_completed: int
    average_score: float
    time_usage: int
    usage_label: str
    total_estimated: float
    total_actual: float


@dataclass(frozen=True)
class ProfileInputs:
    """Body profile values as entered by the user."""

    age: int | None
    gender: str | None
    height_cm: float | None
    weight_kg: float | None
    activity_level: str | None = "moderate"
    goal: str | None = "maintenance"


@dataclass(frozen=True)
class ProfileMetrics:
    """Energy expenditure figures derived from a profile."""

    bmr: float
    tdee: float
    target_calories: float


@dataclass(frozen=True)
class WeeklyBodySummary:
    """This week's intake, training, sleep and weight trend."""

    calories_in: float
    workouts: int
    calories_burned: float
    avg_sleep_hours: float
    weight_change: float


@dataclass(frozen=True)
class CashflowSummary:
    """Income and spending totals for a date range."""

    total_income: float
    total_outcome: float
    net_balance: float
    transaction_count: int
    outcome_by_category: list[tuple[str, float]]
