"""Parses the values of ``autoalarm:`` tags into complete :py:class:`autoalarm.MetricAlarmOptions`.

A tag value holds up to eight ``/``-delimited fields::

    {warning}/{critical}/{period}/{evaluation_periods}/{statistic}/{datapoints}/{operator}/{missing_data}

such as ``80/95/60/5/Maximum/5/GreaterThanThreshold/ignore``. A threshold of ``-`` disables that classification. Any
field which is missing, empty, or invalid takes its value from the metric's defaults. Parsing never fails; a malformed
tag must never prevent alarms from being built from defaults.
"""

import dataclasses
import logging
import math

from autoalarm import MetricAlarmOptions
from autoalarm.constants import (
    COMPARISON_OPERATORS,
    MISSING_DATA_TREATMENTS,
    OVERRIDE_DELIMITER,
    THRESHOLD_DISABLED,
)
from autoalarm.statistics import format_number, resolve_statistic

logger = logging.getLogger(__name__)

#: Order of the fields in a tag override
OPTION_FIELDS = [
    'warning_threshold',
    'critical_threshold',
    'period',
    'evaluation_periods',
    'statistic',
    'data_points_to_alarm',
    'comparison_operator',
    'missing_data_treatment',
]


def _parse_threshold(field: str, value: str, default: float | None) -> float | None:
    if value == THRESHOLD_DISABLED:
        return None
    if value == '':
        return default
    try:
        threshold = float(value)
    except ValueError:
        logger.debug('Non-numeric %s %r, using %s', field, value, default)
        return default
    if not math.isfinite(threshold):
        logger.debug('Non-finite %s %r, using %s', field, value, default)
        return default
    return threshold


def _parse_count(field: str, value: str, default: int) -> float:
    if value == '':
        return default
    try:
        number = float(value)
    except ValueError:
        logger.debug('Non-numeric %s %r, using %s', field, value, default)
        return default
    if not math.isfinite(number):
        logger.debug('Non-finite %s %r, using %s', field, value, default)
        return default
    # Fractional and non-positive values are kept; normalize_options makes them usable
    return int(number) if number.is_integer() else number


def _match_choice(field: str, value: str, choices: list[str], default: str) -> str:
    if value == '':
        return default
    for choice in choices:
        if choice.lower() == value.lower():
            return choice
    logger.debug('Unknown %s %r, using %s', field, value, default)
    return default


def parse_metric_alarm_options(value: str, defaults: MetricAlarmOptions) -> MetricAlarmOptions:
    """Builds a complete set of alarm options from a tag value and a metric's defaults.

    :param value: The tag's value. May be empty or ``None``, in which case the result equals ``defaults``.
    :type value: str

    :param defaults: Options to fall back on for every field the tag does not validly specify.
    :type defaults: MetricAlarmOptions

    :return: Options with every field resolved.
    :rtype: MetricAlarmOptions
    """

    fields = [part.strip() for part in (value or '').split(OVERRIDE_DELIMITER)]
    # Missing trailing fields behave exactly like empty ones; extra fields are ignored
    fields = (fields + [''] * len(OPTION_FIELDS))[: len(OPTION_FIELDS)]
    warning, critical, period, evaluation_periods, statistic, data_points, operator, missing_data = fields

    return MetricAlarmOptions(
        warning_threshold=_parse_threshold('warning_threshold', warning, defaults.warning_threshold),
        critical_threshold=_parse_threshold('critical_threshold', critical, defaults.critical_threshold),
        period=_parse_count('period', period, defaults.period),
        evaluation_periods=_parse_count('evaluation_periods', evaluation_periods, defaults.evaluation_periods),
        statistic=resolve_statistic(statistic.lower(), defaults.statistic),
        data_points_to_alarm=_parse_count('data_points_to_alarm', data_points, defaults.data_points_to_alarm),
        comparison_operator=_match_choice(
            'comparison_operator', operator, COMPARISON_OPERATORS, defaults.comparison_operator
        ),
        missing_data_treatment=_match_choice(
            'missing_data_treatment', missing_data, MISSING_DATA_TREATMENTS, defaults.missing_data_treatment
        ),
    )


def serialize_metric_alarm_options(options: MetricAlarmOptions) -> str:
    """Renders options as a tag value. Parsing the result with any defaults reproduces ``options``.

    :param options: The options to render.
    :type options: MetricAlarmOptions

    :rtype: str
    """

    def threshold(value):
        return THRESHOLD_DISABLED if value is None else format_number(value)

    return OVERRIDE_DELIMITER.join(
        [
            threshold(options.warning_threshold),
            threshold(options.critical_threshold),
            format_number(options.period),
            format_number(options.evaluation_periods),
            options.statistic,
            format_number(options.data_points_to_alarm),
            options.comparison_operator,
            options.missing_data_treatment,
        ]
    )


def normalize_period(period: float) -> int:
    """Rounds a period to one CloudWatch supports. Periods under 10 seconds become 10, those under 46 seconds become
    30, and anything longer rounds up to a whole number of minutes.

    :param period: The period in seconds.
    :type period: float

    :rtype: int
    """

    if period < 10:
        return 10
    if period < 46:
        return 30
    return int(math.ceil(period / 60)) * 60


def whole_count(count: float) -> int:
    """Rounds an evaluation period or datapoint count up to a whole number of at least 1."""

    return max(1, int(math.ceil(count)))


def normalize_options(options: MetricAlarmOptions) -> MetricAlarmOptions:
    """Returns options whose period and counts CloudWatch accepts. Tags may carry any number for these fields.

    :param options: Options as parsed from a tag.
    :type options: MetricAlarmOptions

    :rtype: MetricAlarmOptions
    """

    return dataclasses.replace(
        options,
        period=normalize_period(options.period),
        evaluation_periods=whole_count(options.evaluation_periods),
        data_points_to_alarm=whole_count(options.data_points_to_alarm),
    )
