# medreminder/services/recurrence.py
# Expands a caregiver's recurrence rule into concrete occurrence dates.
import calendar
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import List, Optional

from ..models import RecurrenceEnd, RecurrenceFrequency

MAX_OCCURRENCES = 1000
MAX_ITERATIONS = 10000
DEFAULT_HORIZON_DAYS = 30
DAY_NAMES = ["mon", "tue", "wed", "thu", "fri", "sat", "sun"]  # date.weekday() order


@dataclass
class RecurrenceRule:
    frequency: RecurrenceFrequency = RecurrenceFrequency.day
    interval: int = 1
    days_of_week: List[str] = field(default_factory=list)
    end_type: Optional[RecurrenceEnd] = None
    end_date: Optional[date] = None
    occurrences: Optional[int] = None


def _add_months(start: date, months: int) -> Optional[date]:
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    if start.day > calendar.monthrange(year, month)[1]:
        return None
    return date(year, month, start.day)


def _add_years(start: date, years: int) -> date:
    try:
        return start.replace(year=start.year + years)
    except ValueError:
        # 29 February
        return start.replace(year=start.year + years, day=28)


def horizon(start_date: date, rule: RecurrenceRule) -> date:
    if rule.end_type in (RecurrenceEnd.never, RecurrenceEnd.after):
        return _add_years(start_date, 1)
    if rule.end_type == RecurrenceEnd.on and rule.end_date:
        return rule.end_date
    return start_date + timedelta(days=DEFAULT_HORIZON_DAYS)


def expand_occurrence_dates(start_date: date, rule: RecurrenceRule) -> List[date]:
    """Dates on which the reminder fires, bounded by the rule's end and the global caps."""
    interval = max(1, int(rule.interval or 1))
    end = horizon(start_date, rule)
    if rule.end_type == RecurrenceEnd.after:
        limit = max(1, int(rule.occurrences or 1))
    else:
        limit = MAX_OCCURRENCES
    limit = min(limit, MAX_OCCURRENCES)
    wanted_days = {d.lower()[:3] for d in (rule.days_of_week or [])}

    dates: List[date] = []
    iterations = 0
    step = 0
    current = start_date
    while current is not None and current <= end and len(dates) < limit and iterations < MAX_ITERATIONS:
        iterations += 1
        if rule.frequency == RecurrenceFrequency.day:
            dates.append(current)
            current = current + timedelta(days=interval)
        elif rule.frequency == RecurrenceFrequency.week:
            week_number = (current - start_date).days // 7
            day_name = DAY_NAMES[current.weekday()]
            if week_number % interval == 0 and (not wanted_days or day_name in wanted_days):
                dates.append(current)
            current = current + timedelta(days=1)
        elif rule.frequency == RecurrenceFrequency.month:
            dates.append(current)
            # Skip months that lack the start day-of-month
            current = None
            while current is None and iterations < MAX_ITERATIONS:
                step += 1
                iterations += 1
                current = _add_months(start_date, step * interval)
        else:
            raise ValueError(f"Unsupported recurrence frequency: {rule.frequency}")
    return dates
