"""Resolves the statistic field of a tag override into a statistic CloudWatch will accept.

Standard statistics (``Average``, ``Maximum``, ...) are returned in their canonical casing. Extended statistics are
validated and rewritten into one canonical form, so ``P90`` and ``p90`` produce the same alarm, and ``tm10:90``
becomes ``TM(10:90)``. Anything unrecognized resolves to the caller's default. Nothing in this module talks to AWS.
"""

import logging
import re

from autoalarm.constants import (
    EXTENDED_STATISTIC_FAMILIES,
    EXTENDED_STATISTIC_PREFIXES,
    IQM_STATISTIC,
    STANDARD_STATISTICS,
)

logger = logging.getLogger(__name__)

PARAMETER_SEPARATOR = re.compile(r'[:,]')


def format_number(value: float) -> str:
    """Renders a number the way users write it in tags: ``90.0`` becomes ``90``, but ``99.9`` stays ``99.9``."""

    value = float(value)
    if value.is_integer():
        return str(int(value))
    return repr(value)


def resolve_statistic(token: str, default: str) -> str:
    """Converts a statistic token into its canonical form.

    :param token: The statistic as written in a tag, such as ``Maximum``, ``p99.9``, ``tm10:90``, or ``iqm``.
    :type token: str

    :param default: The statistic to use if ``token`` cannot be understood.
    :type default: str

    :return: The canonical statistic, or ``default``.
    :rtype: str
    """

    if token is None:
        return default
    token = str(token).strip().lower()
    if not token:
        return default

    if token == IQM_STATISTIC.lower():
        return IQM_STATISTIC

    if token in STANDARD_STATISTICS:
        return STANDARD_STATISTICS[token]

    # Percentiles are the only family with a one-letter prefix
    prefix = 'p' if token.startswith('p') else token[:2]
    if prefix not in EXTENDED_STATISTIC_FAMILIES:
        logger.debug('Unknown statistic %r, using %s', token, default)
        return default

    remainder = token[len(prefix) :]
    for char in '()%':
        remainder = remainder.replace(char, '')
    parameters = PARAMETER_SEPARATOR.split(remainder)
    if len(parameters) not in (1, 2):
        logger.debug('Statistic %r has %d parameters, using %s', token, len(parameters), default)
        return default

    try:
        values = [float(parameter) for parameter in parameters]
    except ValueError:
        logger.debug('Statistic %r has non-numeric parameters, using %s', token, default)
        return default

    statistic = _build_extended_statistic(prefix, values)
    if statistic is None:
        logger.debug('Statistic %r is out of range, using %s', token, default)
        return default
    return statistic


def _build_extended_statistic(prefix: str, values: list[float]) -> str | None:
    """Validates the parameters of an extended statistic and renders its canonical form, or returns ``None`` if the
    parameters do not describe a valid statistic for the family."""

    if len(values) == 1:
        value = values[0]
        if not 0 <= value <= 100:
            return None
        return f'{prefix}{format_number(value)}'

    # Percentiles take exactly one parameter
    if prefix == 'p':
        return None
    low, high = values
    if not 0 <= low < high <= 100:
        return None
    return f'{prefix.upper()}({format_number(low)}:{format_number(high)})'


def is_extended_statistic(statistic: str) -> bool:
    """Determines whether a canonical statistic belongs in a metric alarm's ``ExtendedStatistic`` field rather than its
    ``Statistic`` field.

    :param statistic: A statistic as returned by :py:func:`resolve_statistic`.
    :type statistic: str

    :rtype: bool
    """

    return statistic.lower().startswith(EXTENDED_STATISTIC_PREFIXES)
