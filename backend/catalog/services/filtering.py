"""
Filter Service
==============
Composable filtering over catalog entries.

Filter fields (all optional, combined with AND logic):
- name_pattern: Case-sensitive substring match on display_name
- mime_types: Exact MIME type membership
- size_min/size_max: Inclusive byte range over original_size
- date_from/date_to: Inclusive range over uploaded_at
- owner_id: Exact owner match
- is_public: Exact visibility match

An absent field, an empty name pattern and an empty MIME type set impose
no constraint. A range whose lower bound exceeds its upper bound matches
nothing; bounds are never swapped.
"""

from dataclasses import dataclass, field, fields
from datetime import date, datetime, time, timedelta

from django.conf import settings
from django.utils import timezone
from django.utils.dateparse import parse_date, parse_datetime

from catalog.exceptions import InvalidFilter


def _parse_bound(value, name, end_of_day=False):
    """
    Coerce a date bound to an aware datetime.

    A bare date covers the whole day: as a lower bound it starts at
    midnight, as an upper bound it runs to the last microsecond.
    """
    if value is None or isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = _day_boundary(value, end_of_day)
    elif isinstance(value, str):
        parsed = _parse_date_string(value.strip(), name, end_of_day)
    else:
        raise InvalidFilter(f'{name} must be a date or ISO 8601 string', field=name)

    if parsed is not None and settings.USE_TZ and timezone.is_naive(parsed):
        parsed = timezone.make_aware(parsed)
    return parsed


def _parse_date_string(value, name, end_of_day):
    if not value:
        return None
    # parse_datetime also accepts a bare date (as midnight), so dates go first
    try:
        day = parse_date(value)
        if day is not None:
            return _day_boundary(day, end_of_day)
        parsed = parse_datetime(value)
    except ValueError as e:
        raise InvalidFilter(f'{name} is not a valid date: {value!r}', field=name) from e
    if parsed is None:
        raise InvalidFilter(f'{name} is not a valid date: {value!r}', field=name)
    return parsed


def _day_boundary(day, end_of_day):
    start = datetime.combine(day, time.min)
    if end_of_day:
        return start + timedelta(days=1) - timedelta(microseconds=1)
    return start


def _parse_size(value, name):
    if value is None:
        return None
    if isinstance(value, bool):
        raise InvalidFilter(f'{name} must be an integer', field=name)
    try:
        size = int(value)
    except (TypeError, ValueError) as e:
        raise InvalidFilter(f'{name} must be an integer', field=name) from e
    if size < 0:
        raise InvalidFilter(f'{name} must be non-negative', field=name)
    return size


@dataclass
class FilterSpec:
    """
    Explicit filter configuration; every recognised option is a field.

    Values are validated and normalised on construction, so a spec that
    exists can always be evaluated.
    """
    name_pattern: str = None
    mime_types: frozenset = None
    size_min: int = None
    size_max: int = None
    date_from: datetime = None
    date_to: datetime = None
    owner_id: object = None
    is_public: bool = None
    _empty: bool = field(default=False, init=False, repr=False, compare=False)

    def __post_init__(self):
        if self.name_pattern == '':
            self.name_pattern = None
        if self.name_pattern is not None and not isinstance(self.name_pattern, str):
            raise InvalidFilter('name_pattern must be a string', field='name_pattern')

        if self.mime_types is not None:
            if isinstance(self.mime_types, str):
                self.mime_types = [self.mime_types]
            self.mime_types = frozenset(self.mime_types) or None

        self.size_min = _parse_size(self.size_min, 'size_min')
        self.size_max = _parse_size(self.size_max, 'size_max')
        self.date_from = _parse_bound(self.date_from, 'date_from')
        self.date_to = _parse_bound(self.date_to, 'date_to', end_of_day=True)

        if self.is_public is not None and not isinstance(self.is_public, bool):
            raise InvalidFilter('is_public must be a boolean', field='is_public')

        self._empty = (
            (self.size_min is not None and self.size_max is not None and self.size_min > self.size_max)
            or (self.date_from is not None and self.date_to is not None and self.date_from > self.date_to)
        )

    @classmethod
    def field_names(cls):
        return [f.name for f in fields(cls) if f.init]

    @classmethod
    def from_dict(cls, data):
        """
        Build a spec from a mapping, rejecting unknown keys.

        Raises:
            InvalidFilter: unknown key or invalid value
        """
        known = set(cls.field_names())
        for key in data:
            if key not in known:
                raise InvalidFilter(f'Unknown filter field {key!r}', field=key)
        return cls(**data)

    @property
    def matches_nothing(self) -> bool:
        """True when a range is inverted."""
        return self._empty

    @property
    def is_unconstrained(self) -> bool:
        return not self._empty and all(
            getattr(self, name) is None for name in self.field_names()
        )

    def matches(self, entry) -> bool:
        if self._empty:
            return False
        if self.name_pattern is not None and self.name_pattern not in entry.display_name:
            return False
        if self.mime_types is not None and entry.mime_type not in self.mime_types:
            return False
        if self.size_min is not None and entry.original_size < self.size_min:
            return False
        if self.size_max is not None and entry.original_size > self.size_max:
            return False
        if self.date_from is not None and entry.uploaded_at < self.date_from:
            return False
        if self.date_to is not None and entry.uploaded_at > self.date_to:
            return False
        if self.owner_id is not None and entry.owner_id != self.owner_id:
            return False
        if self.is_public is not None and entry.is_public != self.is_public:
            return False
        return True


def evaluate(entries, spec=None) -> list:
    """
    Return the entries matching ``spec``, in their original order.

    Args:
        entries: ordered iterable of entries
        spec: FilterSpec, a mapping of filter fields, or None

    Returns:
        list: matching entries, stable with respect to the input order
    """
    if spec is None:
        return list(entries)
    if not isinstance(spec, FilterSpec):
        spec = FilterSpec.from_dict(spec)
    if spec.matches_nothing:
        return []
    return [entry for entry in entries if spec.matches(entry)]
