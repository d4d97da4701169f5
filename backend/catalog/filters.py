"""
Query-string binding for the filter engine.

Query Parameters:
    name: Case-sensitive substring of the display name
    mime_type: Exact MIME type, comma separated for several
    size_min / size_max: Inclusive size range in bytes
    date_from / date_to: Inclusive upload date range (ISO 8601)
    is_public: true/false

All filters use AND logic. Parameters outside this list (apart from
pagination and scope) are rejected, as are inverted ranges, so a caller
learns about a typo instead of getting an empty page.
"""

from django import forms
from django_filters import rest_framework as filters

from contracts.models import FileEntry
from .exceptions import InvalidFilter
from .services.catalog import snapshot
from .services.filtering import FilterSpec, evaluate


CONTROL_PARAMS = frozenset({'limit', 'offset', 'scope'})


class CharInFilter(filters.BaseInFilter, filters.CharFilter):
    """Comma separated list of exact strings."""


class SizeFilter(filters.NumberFilter):
    field_class = forms.IntegerField


class FileEntryFilter(filters.FilterSet):
    """
    Parses and validates filter parameters, then hands evaluation to
    ``services.filtering.evaluate`` over a single snapshot of the scope.
    """

    name = filters.CharFilter(
        help_text='Case-sensitive substring match on display name'
    )
    mime_type = CharInFilter(
        help_text='Exact MIME type(s), comma separated'
    )
    size_min = SizeFilter(
        min_value=0,
        help_text='Minimum file size in bytes'
    )
    size_max = SizeFilter(
        min_value=0,
        help_text='Maximum file size in bytes'
    )
    date_from = filters.CharFilter(
        help_text='Files uploaded on or after this date (ISO 8601)'
    )
    date_to = filters.CharFilter(
        help_text='Files uploaded on or before this date (ISO 8601)'
    )
    is_public = filters.BooleanFilter(
        help_text='Only public (true) or private (false) files'
    )

    class Meta:
        model = FileEntry
        fields = [
            'name',
            'mime_type',
            'size_min',
            'size_max',
            'date_from',
            'date_to',
            'is_public',
        ]

    def get_spec(self) -> FilterSpec:
        """
        Validate the bound parameters and build a FilterSpec.

        Raises:
            InvalidFilter: unknown parameter, malformed value or inverted range
        """
        for key in self.data:
            if key not in self.filters and key not in CONTROL_PARAMS:
                raise InvalidFilter(f'Unknown filter parameter {key!r}', field=key)

        if not self.is_valid():
            field, messages = next(iter(self.form.errors.items()))
            raise InvalidFilter(f'{field}: {" ".join(messages)}', field=field)

        data = self.form.cleaned_data
        spec = FilterSpec(
            name_pattern=data.get('name') or None,
            mime_types=data.get('mime_type') or None,
            size_min=data.get('size_min'),
            size_max=data.get('size_max'),
            date_from=data.get('date_from') or None,
            date_to=data.get('date_to') or None,
            is_public=data.get('is_public'),
        )

        if spec.size_min is not None and spec.size_max is not None and spec.size_min > spec.size_max:
            raise InvalidFilter('size_min must not exceed size_max', field='size_min')
        if spec.date_from is not None and spec.date_to is not None and spec.date_from > spec.date_to:
            raise InvalidFilter('date_from must not be after date_to', field='date_from')
        return spec

    def filter_queryset(self, queryset):
        """
        Evaluate over one snapshot of ``queryset``.

        The parsed spec and the snapshot stay on the filterset so callers
        can compute stats from the same read.
        """
        self.spec = self.get_spec()
        self.entries = snapshot(queryset)
        return evaluate(self.entries, self.spec)
