"""Caller-side helper for the 911-calls hot-spot analysis.

The controller does not validate domain semantics; this is where a caller
turns a date range into validated JobParameters.
"""

from datetime import date, datetime, timedelta
from typing import Union

from gpjobs.core.models.job import ExecutionMode, JobParameters

QUERY_TEMPLATE = "(\"DATE\" > date '{start} 00:00:00' AND \"DATE\" < date '{end} 00:00:00')"


class InvalidDateRangeError(ValueError):
    """The end date is not at least one full day after the start date."""


def _as_date(value: Union[date, datetime]) -> date:
    return value.date() if isinstance(value, datetime) else value


def build_date_query(from_date: Union[date, datetime], to_date: Union[date, datetime]) -> str:
    """Render the where-clause selecting calls strictly between both dates."""
    return QUERY_TEMPLATE.format(
        start=_as_date(from_date).strftime("%Y-%m-%d"),
        end=_as_date(to_date).strftime("%Y-%m-%d"),
    )


def build_hotspot_parameters(
    from_date: Union[date, datetime],
    to_date: Union[date, datetime],
    mode: ExecutionMode = ExecutionMode.asynchronous_submit,
    input_name: str = "Query",
) -> JobParameters:
    """Validate the date range and build parameters for the hot-spot task.

    Raises:
        InvalidDateRangeError: when `to_date` is not strictly more than one day
            after `from_date` (there has to be at least one day in between).
    """
    start, end = _as_date(from_date), _as_date(to_date)
    if end <= start + timedelta(days=1):
        raise InvalidDateRangeError(
            f"Invalid date range {start} - {end}: there has to be at least one day "
            "in between the from and to dates"
        )
    return JobParameters(execution_mode=mode, inputs={input_name: build_date_query(start, end)})
