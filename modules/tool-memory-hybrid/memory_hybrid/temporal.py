"""Natural-language time expressions to absolute time ranges.

Handles "yesterday", "last week", "Monday", "December 15", "past 3 days"
and similar phrases. Parsing is pure: the clock is injected and nothing is
read from or written to the outside world.
"""

import calendar
import re
from datetime import date, datetime, time, timedelta
from typing import Callable, Optional

from .models import TemporalRange

_END_OF_DAY = time(23, 59, 59, 999_000)

_WEEKDAYS = (
    ("monday", "mon"),
    ("tuesday", "tue"),
    ("wednesday", "wed"),
    ("thursday", "thu"),
    ("friday", "fri"),
    ("saturday", "sat"),
    ("sunday", "sun"),
)

_MONTHS = {
    "january": 1, "jan": 1,
    "february": 2, "feb": 2,
    "march": 3, "mar": 3,
    "april": 4, "apr": 4,
    "may": 5,
    "june": 6, "jun": 6,
    "july": 7, "jul": 7,
    "august": 8, "aug": 8,
    "september": 9, "sept": 9, "sep": 9,
    "october": 10, "oct": 10,
    "november": 11, "nov": 11,
    "december": 12, "dec": 12,
}
_MONTH_ALT = "|".join(sorted(_MONTHS, key=len, reverse=True))

# (pattern, label, start, end)
_DAY_PARTS = (
    ("morning", "this morning", time(5, 0), time(11, 59, 59, 999_000)),
    ("afternoon", "this afternoon", time(12, 0), time(17, 59, 59, 999_000)),
    ("evening|tonight", "this evening", time(18, 0), _END_OF_DAY),
)

_TODAY_RE = re.compile(r"\btoday\b")
_THIS_DAY_PART_RE = re.compile(r"\bthis (morning|afternoon|evening)\b")
_YESTERDAY_RE = re.compile(r"\byesterday\b")
_LAST_WEEK_RE = re.compile(r"\blast week\b")
_THIS_WEEK_RE = re.compile(r"\bthis week\b")
_LAST_MONTH_RE = re.compile(r"\blast month\b")
_THIS_MONTH_RE = re.compile(r"\bthis month\b")
_WEEKDAY_RE = re.compile(
    r"\b(?:(last|on|this past|since)\s+)?("
    + "|".join(f"{full}|{abbr}" for full, abbr in _WEEKDAYS)
    + r")\b"
)
_LAST_N_DAYS_RE = re.compile(r"\b(?:last|past)\s+(\d+)\s+days?\b")
_MONTH_DAY_RE = re.compile(rf"\b({_MONTH_ALT})\.?\s+(\d{{1,2}})(?:st|nd|rd|th)?\b")
_ORDINAL_DAY_RE = re.compile(r"\b(\d{1,2})(?:st|nd|rd|th)\b")
_MONTH_RE = re.compile(rf"\b({_MONTH_ALT})\b")
# "may" and "mar" are also ordinary words; as a bare month they need a lead-in
_BARE_MONTH_LEAD_RE = re.compile(r"\b(?:in|during|since|of|last|this|back in)\s+$")
_AMBIGUOUS_MONTHS = frozenset({"may", "mar"})
# likewise "sun", "sat", "wed" and "mon" only count after a qualifier
_AMBIGUOUS_WEEKDAYS = frozenset({"sun", "sat", "wed", "mon"})
_EPOCH = date(1970, 1, 1)
_DAY_PART_RES = tuple(
    (re.compile(rf"\b({pattern})\b"), label, start, end) for pattern, label, start, end in _DAY_PARTS
)

_WEEKDAY_INDEX = {}
for _index, (_full, _abbr) in enumerate(_WEEKDAYS):
    _WEEKDAY_INDEX[_full] = _index
    _WEEKDAY_INDEX[_abbr] = _index


def _ms(moment: datetime) -> int:
    return int(round(moment.timestamp() * 1000))


class TemporalQueryParser:
    """Detects a time expression in a query and returns its absolute range.

    Detection order (first match wins):
    today / this morning|afternoon|evening, yesterday, last|this week,
    last|this month, weekday names, last|past N days, month names,
    month + day or ordinal day, and finally bare day parts.

    Args:
        now: Clock returning the current local datetime (naive or aware)
        first_weekday: First day of the week, 0 = Monday ... 6 = Sunday
    """

    def __init__(
        self,
        now: Optional[Callable[[], datetime]] = None,
        first_weekday: int = 0,
    ):
        self._now = now or datetime.now
        self.first_weekday = first_weekday

    def parse(self, query: str) -> Optional[TemporalRange]:
        """Return the time range a query refers to, or None."""
        text = query.lower()
        now = self._now()
        today = now.date()

        for parse_step in (
            self._today,
            self._yesterday,
            self._week,
            self._month_relative,
            self._weekday,
            self._last_n_days,
            self._month_alone,
            self._specific_date,
            self._day_part,
        ):
            result = parse_step(text, now, today)
            if result is not None:
                return result
        return None

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _at(self, now: datetime, day: date, at: time) -> datetime:
        return datetime.combine(day, at, tzinfo=now.tzinfo)

    def _day_range(
        self, now: datetime, first: date, last: date, label: str, expression: str
    ) -> TemporalRange:
        return TemporalRange(
            start_ms=_ms(self._at(now, first, time.min)),
            end_ms=_ms(self._at(now, last, _END_OF_DAY)),
            label=label,
            expression=expression,
        )

    def _week_start(self, today: date) -> date:
        return today - timedelta(days=(today.weekday() - self.first_weekday) % 7)

    @staticmethod
    def _month_end(year: int, month: int) -> date:
        return date(year, month, calendar.monthrange(year, month)[1])

    @staticmethod
    def _valid_date(year: int, month: int, day: int) -> Optional[date]:
        try:
            return date(year, month, day)
        except ValueError:
            return None

    # ------------------------------------------------------------------
    # detection steps
    # ------------------------------------------------------------------

    def _today(self, text: str, now: datetime, today: date) -> Optional[TemporalRange]:
        part = _THIS_DAY_PART_RE.search(text)
        if part is not None:
            return self._day_part_range(part.group(1), now, today, part.group(0))
        match = _TODAY_RE.search(text)
        if match is not None:
            return self._day_range(now, today, today, "today", match.group(0))
        return None

    def _yesterday(self, text: str, now: datetime, today: date) -> Optional[TemporalRange]:
        match = _YESTERDAY_RE.search(text)
        if match is None:
            return None
        yesterday = today - timedelta(days=1)
        return self._day_range(now, yesterday, yesterday, "yesterday", match.group(0))

    def _week(self, text: str, now: datetime, today: date) -> Optional[TemporalRange]:
        match = _LAST_WEEK_RE.search(text)
        if match is not None:
            start = self._week_start(today) - timedelta(days=7)
            return self._day_range(now, start, start + timedelta(days=6), "last week", match.group(0))
        match = _THIS_WEEK_RE.search(text)
        if match is not None:
            return self._day_range(now, self._week_start(today), today, "this week", match.group(0))
        return None

    def _month_relative(self, text: str, now: datetime, today: date) -> Optional[TemporalRange]:
        match = _LAST_MONTH_RE.search(text)
        if match is not None:
            year, month = (today.year, today.month - 1) if today.month > 1 else (today.year - 1, 12)
            return self._day_range(
                now, date(year, month, 1), self._month_end(year, month), "last month", match.group(0)
            )
        match = _THIS_MONTH_RE.search(text)
        if match is not None:
            return self._day_range(now, today.replace(day=1), today, "this month", match.group(0))
        return None

    def _weekday(self, text: str, now: datetime, today: date) -> Optional[TemporalRange]:
        match = next(
            (
                m
                for m in _WEEKDAY_RE.finditer(text)
                if m.group(1) or m.group(2) not in _AMBIGUOUS_WEEKDAYS
            ),
            None,
        )
        if match is None:
            return None
        qualifier, name = match.group(1), match.group(2)
        target = _WEEKDAY_INDEX[name]
        full_name = _WEEKDAYS[target][0].capitalize()

        # most recent past occurrence, never today
        back = (today.weekday() - target) % 7 or 7
        day = today - timedelta(days=back)
        label = full_name

        if qualifier == "last":
            label = f"last {full_name}"
            this_week = self._week_start(today) + timedelta(days=(target - self.first_weekday) % 7)
            if this_week < today:
                day = this_week - timedelta(days=7)

        return self._day_range(now, day, day, label, match.group(0))

    def _last_n_days(self, text: str, now: datetime, today: date) -> Optional[TemporalRange]:
        match = _LAST_N_DAYS_RE.search(text)
        if match is None:
            return None
        days = int(match.group(1))
        # nothing is stored before the epoch; also keeps huge N in datetime range
        if days >= (today - _EPOCH).days:
            start_ms = 0
        else:
            start_ms = _ms(now - timedelta(days=days))
        return TemporalRange(
            start_ms=start_ms,
            end_ms=_ms(now),
            label=f"last {days} days",
            expression=match.group(0),
        )

    def _month_alone(self, text: str, now: datetime, today: date) -> Optional[TemporalRange]:
        for match in _MONTH_RE.finditer(text):
            name = match.group(1)
            if re.match(r"\.?\s+\d", text[match.end():]):
                continue  # "december 15" is a specific date
            if name in _AMBIGUOUS_MONTHS and not _BARE_MONTH_LEAD_RE.search(text[: match.start()]):
                continue

            month = _MONTHS[name]
            year = today.year
            if date(year, month, 1) > today:
                year -= 1
            full_name = calendar.month_name[month]
            return self._day_range(
                now, date(year, month, 1), self._month_end(year, month), full_name, match.group(0)
            )
        return None

    def _specific_date(self, text: str, now: datetime, today: date) -> Optional[TemporalRange]:
        match = _MONTH_DAY_RE.search(text)
        if match is not None:
            month = _MONTHS[match.group(1)]
            day_of_month = int(match.group(2))
            day = self._valid_date(today.year, month, day_of_month)
            if day is not None and day > today:
                day = self._valid_date(today.year - 1, month, day_of_month)
            if day is None:
                return None
            label = f"{calendar.month_name[month]} {day_of_month}"
            return self._day_range(now, day, day, label, match.group(0))

        match = _ORDINAL_DAY_RE.search(text)
        if match is not None:
            day_of_month = int(match.group(1))
            day = self._valid_date(today.year, today.month, day_of_month)
            if day is None or day > today:
                year, month = (
                    (today.year, today.month - 1) if today.month > 1 else (today.year - 1, 12)
                )
                day = self._valid_date(year, month, day_of_month)
            if day is None:
                return None
            return self._day_range(now, day, day, f"the {match.group(0)}", match.group(0))
        return None

    def _day_part(self, text: str, now: datetime, today: date) -> Optional[TemporalRange]:
        for pattern, _label, _start, _end in _DAY_PART_RES:
            match = pattern.search(text)
            if match is not None:
                return self._day_part_range(match.group(1), now, today, match.group(0))
        return None

    def _day_part_range(
        self, word: str, now: datetime, today: date, expression: str
    ) -> TemporalRange:
        for pattern, label, start, end in _DAY_PART_RES:
            if pattern.fullmatch(word):
                return TemporalRange(
                    start_ms=_ms(self._at(now, today, start)),
                    end_ms=_ms(self._at(now, today, end)),
                    label=label,
                    expression=expression,
                )
        raise ValueError(f"Unknown day part: {word}")
