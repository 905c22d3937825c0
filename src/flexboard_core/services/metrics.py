"""Derived metrics computed from cached collections.

Every function here is pure: it reads entity snapshots and returns plain
records. Bad user-entered numbers are clamped or defaulted, never raised.
"""

import math
from collections.abc import Iterable, Sequence
from datetime import date, datetime, timedelta

from flexboard_core.domain.entities import Entity
from flexboard_core.domain.metrics import (
    CashflowSummary,
    DailyActivity,
    DailyStats,
    MonthlyTaskStats,
    PeriodComparison,
    PriorityBreakdown,
    PriorityInputs,
    ProfileInputs,
    ProfileMetrics,
    StreakState,
    WeeklyBodySummary,
    WeeklyComparison,
)

URGENCY_WEIGHT = 0.3
IMPORTANCE_WEIGHT = 0.3
IMPACT_WEIGHT = 0.3
EFFORT_WEIGHT = 0.1
MIN_PRIORITY_SCORE = 0.1
MAX_PRIORITY_SCORE = 10.0
MAX_RATING = 10.0

CRITICAL_THRESHOLD = 8
HIGH_THRESHOLD = 6
MEDIUM_THRESHOLD = 4

DEFAULT_AGE = 25
DEFAULT_HEIGHT_CM = 170.0
DEFAULT_WEIGHT_KG = 70.0
DEFAULT_ACTIVITY_MULTIPLIER = 1.55

ACTIVITY_MULTIPLIERS = {
    "sedentary": 1.2,
    "light": 1.375,
    "lightly_active": 1.375,
    "moderate": 1.55,
    "moderately_active": 1.55,
    "active": 1.725,
    "very_active": 1.9,
    "extremely_active": 1.9,
}

CUTTING_DEFICIT = 500
BULKING_SURPLUS = 300

DAYS_PER_WEEK = 7
DECEMBER = 12


def compute_priority_score(inputs: PriorityInputs) -> float:
    """Weighted task priority in [0.1, 10.0], one decimal place."""
    urgency = _clamp(_to_float(inputs.urgency), 0.0, MAX_RATING)
    importance = _clamp(_to_float(inputs.importance), 0.0, MAX_RATING)
    effort = _clamp(_to_float(inputs.effort), 0.0, MAX_RATING)
    impact = _clamp(_to_float(inputs.impact), 0.0, MAX_RATING)
    score = (
        urgency * URGENCY_WEIGHT
        + importance * IMPORTANCE_WEIGHT
        + impact * IMPACT_WEIGHT
        + effort * EFFORT_WEIGHT
    )
    return round_one(_clamp(score, MIN_PRIORITY_SCORE, MAX_PRIORITY_SCORE))


def priority_label(score: float) -> str:
    """Human label for a priority score."""
    if score >= CRITICAL_THRESHOLD:
        return "Critical"
    if score >= HIGH_THRESHOLD:
        return "High"
    if score >= MEDIUM_THRESHOLD:
        return "Medium"
    return "Low"


def priority_breakdown(tasks: Iterable[Entity]) -> PriorityBreakdown:
    """Count completed tasks per priority label."""
    counts = {"Critical": 0, "High": 0, "Medium": 0, "Low": 0}
    for task in tasks:
        if _is_completed(task):
            counts[priority_label(_to_float(task.get("priority_score", 0)))] += 1
    return PriorityBreakdown(
        critical=counts["Critical"],
        high=counts["High"],
        medium=counts["Medium"],
        low=counts["Low"],
    )


def compute_bmr(profile: ProfileInputs) -> float:
    """Mifflin-St Jeor basal metabolic rate."""
    age = _positive_or(profile.age, DEFAULT_AGE)
    height = _positive_or(profile.height_cm, DEFAULT_HEIGHT_CM)
    weight = _positive_or(profile.weight_kg, DEFAULT_WEIGHT_KG)
    base = 10 * weight + 6.25 * height - 5 * age
    if (profile.gender or "").strip().lower() == "male":
        return base + 5
    return base - 161


def compute_tdee(bmr: float, activity_level: str | None) -> float:
    """Total daily energy expenditure for an activity level."""
    multiplier = ACTIVITY_MULTIPLIERS.get(
        (activity_level or "").strip().lower(), DEFAULT_ACTIVITY_MULTIPLIER
    )
    return bmr * multiplier


def compute_target_calories(tdee: float, goal: str | None) -> float:
    """Daily calorie target for a body goal."""
    normalized = (goal or "").strip().lower()
    if normalized == "cutting":
        return tdee - CUTTING_DEFICIT
    if normalized == "bulking":
        return tdee + BULKING_SURPLUS
    return tdee


def compute_profile_metrics(profile: ProfileInputs) -> ProfileMetrics:
    """BMR, TDEE and target calories for a profile."""
    bmr = compute_bmr(profile)
    tdee = compute_tdee(bmr, profile.activity_level)
    return ProfileMetrics(
        bmr=bmr,
        tdee=tdee,
        target_calories=compute_target_calories(tdee, profile.goal),
    )


def compute_streaks(activities: Sequence[DailyActivity]) -> StreakState:
    """Current and best streaks over days ordered oldest to newest."""
    best = 0
    run = 0
    for activity in activities:
        run = run + 1 if activity.has_completed_work else 0
        best = max(best, run)
    current = 0
    for activity in reversed(activities):
        if not activity.has_completed_work:
            break
        current += 1
    return StreakState(current_streak=current, best_streak=best)


def build_daily_activity(
    tasks: Iterable[Entity],
    journal_entries: Iterable[Entity],
    start: date,
    end: date,
) -> list[DailyActivity]:
    """Mark each day in [start, end] active or not."""
    completed_days = {
        day
        for task in tasks
        if _is_completed(task) and (day := entity_date(task)) is not None
    }
    journal_days = _journal_days(journal_entries)
    return [
        DailyActivity(
            day=day, has_completed_work=day in completed_days or day in journal_days
        )
        for day in _days(start, end)
    ]


def completion_rate(completed: int, total: int) -> int:
    """Completed share as a whole percentage; 0 when nothing was planned."""
    if total <= 0:
        return 0
    return round_half_up(completed / total * 100)


def build_daily_stats(
    tasks: Iterable[Entity],
    journal_entries: Iterable[Entity],
    start: date,
    end: date,
) -> list[DailyStats]:
    """Per-day task completion, points and time for [start, end]."""
    by_day: dict[date, list[Entity]] = {}
    for task in tasks:
        day = entity_date(task)
        if day is not None:
            by_day.setdefault(day, []).append(task)
    journal_days = _journal_days(journal_entries)

    stats = []
    for day in _days(start, end):
        day_tasks = by_day.get(day, [])
        completed = [task for task in day_tasks if _is_completed(task)]
        points = _total(completed, "priority_score")
        minutes = _total(completed, "actual_minutes")
        stats.append(
            DailyStats(
                day=day,
                tasks_completed=len(completed),
                total_tasks=len(day_tasks),
                completion_rate=completion_rate(len(completed), len(day_tasks)),
                total_points=round_one(points),
                time_spent=round_half_up(minutes),
                journal_entry=day in journal_days,
            )
        )
    return stats


def weekly_comparison(tasks: Iterable[Entity], today: date) -> WeeklyComparison:
    """Completed task count, points and hours for this ISO week and the last."""
    this_week = today.isocalendar()[:2]
    last_week = (today - timedelta(days=DAYS_PER_WEEK)).isocalendar()[:2]
    buckets: dict[tuple[int, int], list[Entity]] = {this_week: [], last_week: []}
    for task in tasks:
        day = entity_date(task)
        if day is None or not _is_completed(task):
            continue
        week = day.isocalendar()[:2]
        if week in buckets:
            buckets[week].append(task)

    def points(week: tuple[int, int]) -> float:
        return round_one(_total(buckets[week], "priority_score"))

    def hours(week: tuple[int, int]) -> float:
        return round_one(_total(buckets[week], "actual_minutes") / 60)

    return WeeklyComparison(
        tasks=PeriodComparison(
            this_week=len(buckets[this_week]), last_week=len(buckets[last_week])
        ),
        points=PeriodComparison(
            this_week=points(this_week), last_week=points(last_week)
        ),
        time_hours=PeriodComparison(
            this_week=hours(this_week), last_week=hours(last_week)
        ),
    )


def monthly_task_stats(tasks: Iterable[Entity], today: date) -> MonthlyTaskStats:
    """Month-to-date points weighted by how much of the estimate was used."""
    start = today.replace(day=1)
    end = _month_end(start)
    completed = [
        task
        for task in tasks
        if _is_completed(task)
        and (day := entity_date(task)) is not None
        and start <= day <= end
    ]
    if not completed:
        return MonthlyTaskStats(
            total_points=0.0,
            total_completed=0,
            average_score=0.0,
            time_usage=0,
            usage_label="No data",
            total_estimated=0.0,
            total_actual=0.0,
        )

    total_points = sum(_weighted_points(task) for task in completed)
    total_estimated = _total(completed, "duration_minutes")
    total_actual = _total(completed, "actual_minutes")
    time_usage = 0.0
    if total_estimated > 0:
        time_usage = total_actual / total_estimated * 100
        label = _usage_label(time_usage)
    else:
        label = "No estimates"
    return MonthlyTaskStats(
        total_points=round_one(total_points),
        total_completed=len(completed),
        average_score=round_one(total_points / len(completed)),
        time_usage=round_half_up(time_usage),
        usage_label=label,
        total_estimated=total_estimated,
        total_actual=total_actual,
    )


def weekly_body_summary(
    calorie_entries: Iterable[Entity],
    workout_entries: Iterable[Entity],
    sleep_entries: Iterable[Entity],
    weight_entries: Iterable[Entity],
    today: date,
) -> WeeklyBodySummary:
    """Intake, training, sleep and weight trend for the current week."""
    week_start = today - timedelta(days=today.weekday())
    week_end = week_start + timedelta(days=DAYS_PER_WEEK - 1)

    def in_week(entity: Entity) -> bool:
        day = entity_date(entity)
        return day is not None and week_start <= day <= week_end

    calories = [entry for entry in calorie_entries if in_week(entry)]
    workouts = [entry for entry in workout_entries if in_week(entry)]
    sleep = [entry for entry in sleep_entries if in_week(entry)]
    avg_sleep = _total(sleep, "duration_hours") / len(sleep) if sleep else 0.0
    return WeeklyBodySummary(
        calories_in=_total(calories, "calories"),
        workouts=len(workouts),
        calories_burned=_total(workouts, "calories_burned"),
        avg_sleep_hours=round_one(avg_sleep),
        weight_change=_weight_change(weight_entries, week_start, week_end),
    )


def cashflow_summary(
    incomes: Iterable[Entity],
    outcomes: Iterable[Entity],
    start: date,
    end: date,
) -> CashflowSummary:
    """Income, spending and per-category outflow for [start, end]."""

    def in_range(entity: Entity) -> bool:
        day = entity_date(entity)
        return day is not None and start <= day <= end

    period_incomes = [entry for entry in incomes if in_range(entry)]
    period_outcomes = [entry for entry in outcomes if in_range(entry)]
    total_income = _total(period_incomes, "amount")
    total_outcome = _total(period_outcomes, "amount")

    by_category: dict[str, float] = {}
    for entry in period_outcomes:
        name = _category_name(entry)
        amount = _to_float(entry.get("amount", 0))
        by_category[name] = by_category.get(name, 0.0) + amount

    return CashflowSummary(
        total_income=total_income,
        total_outcome=total_outcome,
        net_balance=total_income - total_outcome,
        transaction_count=len(period_incomes) + len(period_outcomes),
        outcome_by_category=sorted(
            by_category.items(), key=lambda item: item[1], reverse=True
        ),
    )


def entity_date(entity: Entity, field: str = "date") -> date | None:
    """Parse an entity's calendar date field."""
    value = entity.get(field)
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value:
        try:
            return date.fromisoformat(value[:10])
        except ValueError:
            return None
    return None


def round_one(value: float) -> float:
    """Round half up to one decimal place; non-finite values become 0.0."""
    scaled = value * 10 + 0.5
    return math.floor(scaled) / 10 if math.isfinite(scaled) else 0.0


def round_half_up(value: float) -> int:
    shifted = value + 0.5
    return math.floor(shifted) if math.isfinite(shifted) else 0


def _weighted_points(task: Entity) -> float:
    score = _to_float(task.get("priority_score", 0))
    estimate = _to_float(task.get("duration_minutes", 0))
    actual = task.get("actual_minutes")
    if estimate > 0 and actual is not None:
        return score * _to_float(actual) / estimate
    return score


def _usage_label(time_usage: float) -> str:
    if time_usage < 50:  # noqa: PLR2004
        return "Poor Effort"
    if time_usage < 75:  # noqa: PLR2004
        return "Below Standard"
    if time_usage <= 100:  # noqa: PLR2004
        return "Standard"
    if time_usage <= 150:  # noqa: PLR2004
        return "Excellent"
    return "Outstanding"


def _weight_change(
    weight_entries: Iterable[Entity], week_start: date, week_end: date
) -> float:
    latest_in_week: tuple[date, float] | None = None
    latest_before: tuple[date, float] | None = None
    for entry in weight_entries:
        day = entity_date(entry)
        weight = _to_float(entry.get("weight", 0))
        if day is None or weight <= 0:
            continue
        if week_start <= day <= week_end:
            if latest_in_week is None or day > latest_in_week[0]:
                latest_in_week = (day, weight)
        elif day < week_start and (latest_before is None or day > latest_before[0]):
            latest_before = (day, weight)
    if latest_in_week is None or latest_before is None:
        return 0.0
    return round_one(latest_in_week[1] - latest_before[1])


def _journal_days(journal_entries: Iterable[Entity]) -> set[date]:
    return {
        day
        for entry in journal_entries
        if str(entry.get("content", "")).strip()
        and (day := entity_date(entry)) is not None
    }


def _category_name(entry: Entity) -> str:
    category = entry.get("category")
    if isinstance(category, dict) and category.get("name"):
        return str(category["name"])
    return str(entry.get("category_name") or "Unknown")


def _is_completed(task: Entity) -> bool:
    return bool(task.get("completed", False))


def _days(start: date, end: date) -> list[date]:
    return [start + timedelta(days=offset) for offset in range((end - start).days + 1)]


def _month_end(start: date) -> date:
    if start.month == DECEMBER:
        following = start.replace(year=start.year + 1, month=1)
    else:
        following = start.replace(month=start.month + 1)
    return following - timedelta(days=1)


def _total(entities: Iterable[Entity], field: str) -> float:
    return sum(_to_float(entity.get(field, 0)) for entity in entities)


def _clamp(value: float, low: float, high: float) -> float:
    return min(max(value, low), high)


def _positive_or(value: float | None, default: float) -> float:
    number = _to_float(value)
    return number if number > 0 else default


def _to_float(value: object) -> float:
    if not isinstance(value, bool | int | float | str):
        return 0.0
    try:
        number = float(value)
    except (ValueError, OverflowError):
        return 0.0
    return number if math.isfinite(number) else 0.0
