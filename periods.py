from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Iterable, Optional

from models import utcnow
from schemas import CalendarPolicy, FixedDayPolicy, FiscalConfig, IncomeTriggerPolicy

LAST_INSTANT = timedelta(milliseconds=1)


@dataclass(frozen=True)
class Period:
    slug: str
    start: Optional[datetime]
    end: datetime
    label: str

    def contains(self, moment: datetime) -> bool:
        if self.start is not None and moment < self.start:
            return False
        return moment <= self.end


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def _shift_month(year: int, month: int, count: int) -> tuple[int, int]:
    month_index = (year * 12) + (month - 1) + count
    return month_index // 12, (month_index % 12) + 1


def _month_start(year: int, month: int) -> datetime:
    return datetime(year, month, 1)


def _month_end(year: int, month: int) -> datetime:
    next_year, next_month = _shift_month(year, month, 1)
    return _month_start(next_year, next_month) - LAST_INSTANT


def parse_period_key(period_key: str) -> tuple[int, int]:
    try:
        year_text, month_text = period_key.split("-")
        year, month = int(year_text), int(month_text)
    except ValueError as exc:
        raise ValueError(f"Invalid period key: {period_key!r}") from exc
    if len(year_text) != 4 or not 1 <= month <= 12:
        raise ValueError(f"Invalid period key: {period_key!r}")
    return year, month


def _short(moment: datetime) -> str:
    return f"{moment.day} {moment:%b}"


def _calendar_period(period_key: str, year: int, month: int) -> Period:
    start = _month_start(year, month)
    return Period(period_key, start, _month_end(year, month), f"{start:%B %Y}")


def _fixed_day_period(
    period_key: str, year: int, month: int, policy: FixedDayPolicy
) -> Period:
    prev_year, prev_month = _shift_month(year, month, -1)
    start_day = min(policy.start_day, days_in_month(prev_year, prev_month))
    start = datetime(prev_year, prev_month, start_day)

    boundary_day = min(policy.start_day, days_in_month(year, month))
    end = datetime(year, month, boundary_day) - LAST_INSTANT
    return Period(period_key, start, end, f"{_short(start)} – {_short(end)} {end.year}")


def _is_trigger(txn, trigger_category: str) -> bool:
    if txn.category_id is not None and txn.category_id == trigger_category:
        return True
    return getattr(txn, "category_name", None) == trigger_category


def _first_trigger(
    history: Iterable, trigger_category: str, start: datetime, end: datetime
) -> Optional[datetime]:
    moments = [
        txn.occurred_at
        for txn in history
        if start <= txn.occurred_at <= end and _is_trigger(txn, trigger_category)
    ]
    return min(moments) if moments else None


def _income_trigger_period(
    period_key: str,
    year: int,
    month: int,
    policy: IncomeTriggerPolicy,
    history: list,
) -> Period:
    prev_year, prev_month = _shift_month(year, month, -1)
    start = _first_trigger(
        history,
        policy.trigger_category,
        _month_start(prev_year, prev_month),
        _month_end(prev_year, prev_month),
    )
    if start is None:
        return _calendar_period(period_key, year, month)

    next_trigger = _first_trigger(
        history,
        policy.trigger_category,
        _month_start(year, month),
        _month_end(year, month),
    )
    if next_trigger is not None:
        end = next_trigger - LAST_INSTANT
    else:
        end = _month_end(year, month)
    return Period(period_key, start, end, f"{_short(start)} – {_short(end)}")


def resolve_fiscal_period(
    period_key: Optional[str],
    config: FiscalConfig,
    history: Iterable = (),
    *,
    now: Optional[datetime] = None,
) -> Period:
    """Turn a ``"YYYY-MM"`` key (or ``"all"``) into a concrete date window.

    ``history`` is only consulted by the income-trigger policy, which anchors
    the period on the first transaction of the trigger category in the
    previous month and closes it right before the first one in the requested
    month. Results depend on ``history`` and ``config`` and are never cached.
    """
    now = now or utcnow()
    if not period_key or period_key == "all":
        return Period("all", None, now, "All Time")

    year, month = parse_period_key(period_key)
    if isinstance(config, FixedDayPolicy):
        return _fixed_day_period(period_key, year, month, config)
    if isinstance(config, IncomeTriggerPolicy):
        return _income_trigger_period(period_key, year, month, config, list(history))
    if isinstance(config, CalendarPolicy):
        return _calendar_period(period_key, year, month)
    raise TypeError(f"Unsupported fiscal policy: {type(config).__name__}")
