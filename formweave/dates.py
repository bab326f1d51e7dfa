"""Date Value Resolver.

Turns a template's date/datetime specification into a concrete value at the
moment the template is applied:

- ``static`` (or no operator): the value is an absolute date/datetime
- ``relative``: the value is a signed count of ``range`` units added to now

Calendar arithmetic is done with ``dateutil.relativedelta``, so adding months
or years advances the calendar field and clamps the day of month
(2024-01-31 + 1 month = 2024-02-29) rather than adding a fixed number of days.

Datetime results are truncated to the minute; date results carry no time.
Malformed specifications resolve to None, which clears the field.
"""

import logging
from datetime import date, datetime, timedelta, tzinfo
from typing import Any, Optional, Union

from dateutil import parser
from dateutil.relativedelta import relativedelta

from formweave.registry import FieldDescriptor, is_empty
from formweave.types import DateOperator, FieldType, TimeRange

logger = logging.getLogger(__name__)

ConcreteDate = Union[date, datetime]


def truncate_to_minute(value: datetime) -> datetime:
    return value.replace(second=0, microsecond=0)


class DateValueResolver:
    """Resolve static and relative date specifications.

    Attributes:
        tz: Timezone of the form session; "now" and naive static values are
            interpreted in it

    Examples:
        >>> from datetime import datetime, timezone
        >>> resolver = DateValueResolver(timezone.utc)
        >>> now = datetime(2024, 1, 31, tzinfo=timezone.utc)
        >>> resolver.resolve_relative(1, "month", now, FieldType.DATETIME).isoformat()
        '2024-02-29T00:00:00+00:00'
    """

    def __init__(self, tz: tzinfo):
        self.tz = tz

    def resolve(self, spec: Any, now: datetime, field_type: FieldType) -> Optional[ConcreteDate]:
        """Resolve a spec with ``value``, ``operator`` and ``range`` attributes.

        Args:
            spec: A template field option (or anything with the same attributes)
            now: Current instant
            field_type: FieldType.DATE or FieldType.DATETIME

        Returns:
            The concrete date/datetime, or None when the value is empty or malformed
        """
        if is_empty(spec.value):
            return None

        operator = spec.operator
        if isinstance(operator, str):
            try:
                operator = DateOperator(operator)
            except ValueError:
                logger.debug("Unknown date operator %r", operator)
                return None

        if operator is None or operator is DateOperator.STATIC:
            return self.resolve_static(spec.value, field_type)
        if operator is DateOperator.RELATIVE:
            return self.resolve_relative(spec.value, spec.range, now, field_type)
        logger.debug("Unhandled date operator %r", operator)
        return None

    def resolve_static(self, value: Any, field_type: FieldType) -> Optional[ConcreteDate]:
        """Parse an absolute date/datetime into the session timezone."""
        if isinstance(value, datetime):
            parsed = value
        elif isinstance(value, date):
            parsed = datetime(value.year, value.month, value.day)
        else:
            try:
                parsed = parser.isoparse(str(value))
            except ValueError:
                try:
                    parsed = parser.parse(str(value))
                except (ValueError, OverflowError) as exc:
                    logger.debug("Unparseable static date %r: %s", value, exc)
                    return None

        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=self.tz)
        else:
            parsed = parsed.astimezone(self.tz)
        return self._finish(parsed, field_type)

    def coerce(self, value: Any, field_type: FieldType) -> Optional[ConcreteDate]:
        """Normalize an entered date/datetime value; None when it does not parse.

        Examples:
            >>> from datetime import timezone
            >>> DateValueResolver(timezone.utc).coerce("not a date", FieldType.DATE) is None
            True
        """
        if is_empty(value):
            return None
        if not isinstance(value, (str, date)):
            logger.debug("Rejecting non-date value %r", value)
            return None
        return self.resolve_static(value, field_type)

    def resolve_relative(
        self,
        count: Any,
        range_: Any,
        now: datetime,
        field_type: FieldType,
    ) -> Optional[ConcreteDate]:
        """Add ``count`` units of ``range_`` to ``now`` with calendar semantics."""
        if isinstance(count, bool):
            logger.debug("Boolean relative date count %r", count)
            return None
        try:
            amount = int(str(count).strip())
        except ValueError:
            logger.debug("Non-integer relative date count %r", count)
            return None

        try:
            unit = TimeRange(range_) if not isinstance(range_, TimeRange) else range_
        except ValueError:
            logger.debug("Unknown relative date range %r", range_)
            return None

        try:
            result = self._localize(now) + relativedelta(**{f"{unit.value}s": amount})
        except (ValueError, OverflowError) as exc:
            logger.debug("Relative date out of range (%s %s): %s", amount, unit.value, exc)
            return None
        return self._finish(result, field_type)

    def resolve_default(self, descriptor: FieldDescriptor, now: datetime) -> Optional[ConcreteDate]:
        """Resolve a field's configured default when the form opens.

        Numeric defaults are offsets from now: hours for date fields, minutes
        for datetime fields. Anything else is parsed as a static value.
        """
        default = descriptor.default
        if is_empty(default):
            return None
        if isinstance(default, int) and not isinstance(default, bool):
            if descriptor.type is FieldType.DATE:
                offset = timedelta(hours=default)
            else:
                offset = timedelta(minutes=default)
            return self._finish(self._localize(now) + offset, descriptor.type)
        return self.resolve_static(default, descriptor.type)

    def _localize(self, now: datetime) -> datetime:
        if now.tzinfo is None:
            return now.replace(tzinfo=self.tz)
        return now.astimezone(self.tz)

    def _finish(self, value: datetime, field_type: FieldType) -> ConcreteDate:
        if field_type is FieldType.DATE:
            return value.date()
        return truncate_to_minute(value)


__all__ = [
    "DateValueResolver",
    "ConcreteDate",
    "truncate_to_minute",
]
