"""Tag-driven alarm management for AWS resources. Operators tag a resource with values such as
``autoalarm:cpu=80/95/60/5/Maximum/5/GreaterThanThreshold/ignore`` and AutoAlarm keeps the corresponding CloudWatch
alarms or Prometheus alerting rules in line with those tags.

This module holds the types shared by every part of the library, a cache of AWS clients, and a few helpers for reading
the environment.
"""

import boto3
import logging

from dataclasses import dataclass, field
from enum import Enum
from os import environ

#: Anomaly alarms reuse the threshold fields of :py:class:`MetricAlarmOptions`, but for them a threshold is the width of
#: the anomaly detection band in standard deviations, not an absolute metric value.
type BandWidth = float


class AlarmClassification(Enum):
    """Every alarm is either a warning or a critical alarm."""

    WARNING = 'Warning'
    CRITICAL = 'Critical'


class AlarmVariant(Enum):
    """The workflow used to build an alarm."""

    STATIC = 'static'
    ANOMALY = 'anomaly'


@dataclass(frozen=True)
class Dimension:
    """A CloudWatch metric dimension."""

    name: str
    value: str

    def to_api(self) -> dict:
        """Returns this dimension in the shape the CloudWatch API expects."""
        return {'Name': self.name, 'Value': self.value}


@dataclass(frozen=True)
class MetricAlarmOptions:
    """A complete set of options for the alarms belonging to one metric. These are recomputed on every reconciliation
    pass from a resource's tags and the metric's defaults, and no field is ever left unresolved.

    For static alarms, ``warning_threshold`` and ``critical_threshold`` are absolute metric values. For anomaly alarms,
    they are :py:data:`BandWidth` multipliers. A threshold of ``None`` means that classification's alarm should not
    exist.
    """

    warning_threshold: float | BandWidth | None
    critical_threshold: float | BandWidth | None
    period: int
    evaluation_periods: int
    statistic: str
    data_points_to_alarm: int
    comparison_operator: str
    missing_data_treatment: str

    def threshold(self, classification: AlarmClassification) -> float | None:
        """Returns the threshold for the given classification."""
        if classification is AlarmClassification.WARNING:
            return self.warning_threshold
        return self.critical_threshold


@dataclass(frozen=True)
class MetricAlarmConfig:
    """Static description of one alarmable metric of a service. These are fixed at deploy time; see
    :py:mod:`autoalarm.metrics`.

    :param tag_key: The tag suffix users append after ``autoalarm:`` to override this metric's defaults.
    :type tag_key: str

    :param metric_name: Name of the CloudWatch metric. May be empty when it must be resolved at runtime, such as memory
        metrics whose names depend on the instance's operating system.
    :type metric_name: str

    :param metric_namespace: CloudWatch namespace of the metric.
    :type metric_namespace: str

    :param default_create: When ``True``, alarms are created with ``defaults`` even if the resource has no tag for this
        metric.
    :type default_create: bool

    :param anomaly: Selects the anomaly detection workflow instead of a static threshold.
    :type anomaly: bool

    :param defaults: Options used when there is no override, and to fill unspecified fields of an override.
    :type defaults: MetricAlarmOptions

    :param prometheus_expression: A PromQL template with ``{instance}`` and ``{threshold}`` placeholders. Metrics
        without one can only be alarmed on through CloudWatch.
    :type prometheus_expression: str, optional

    :param storage: When ``True``, one alarm is built per storage path of the resource.
    :type storage: bool, optional
    """

    tag_key: str
    metric_name: str
    metric_namespace: str
    default_create: bool
    anomaly: bool
    defaults: MetricAlarmOptions
    prometheus_expression: str | None = None
    storage: bool = False


@dataclass(frozen=True)
class ResourceIdentity:
    """Everything the reconciliation engines need to know about which resource they are alarming on.

    :param service: Service name as it appears in alarm names, such as ``EC2`` or ``SQS``.
    :type service: str

    :param service_identifier: The resource's ID or a name derived from its ARN.
    :type service_identifier: str

    :param dimensions: Dimensions which identify this resource's metrics.
    :type dimensions: list[Dimension]

    :param storage_paths: For resources with several volumes, maps each storage path to the dimensions of its metrics.
        Defaults to {}.
    :type storage_paths: dict[str, list[Dimension]], optional

    :param prometheus_instance: The value of the ``instance`` label this resource's metrics carry in Prometheus.
    :type prometheus_instance: str, optional

    :param arn: The resource's ARN, where it has one.
    :type arn: str, optional
    """

    service: str
    service_identifier: str
    dimensions: list[Dimension]
    storage_paths: dict[str, list[Dimension]] = field(default_factory=dict)
    prometheus_instance: str | None = None
    arn: str | None = None


class AwsClients:
    """Builds AWS clients on demand and caches them for the life of the process. Handlers build one of these at cold
    start and pass it to everything that talks to AWS, which lets tests hand in their own clients instead.

    :param region_name: Name of the region to build clients for. Defaults to the session's region.
    :type region_name: str, optional

    :param session: A ``boto3`` session to build clients from. Defaults to a new session.
    :type session: boto3.session.Session, optional
    """

    def __init__(self, region_name: str = None, session: boto3.session.Session = None):
        self.__session = session or boto3.session.Session()
        self.__clients = {}
        #: Region clients are built for when none is specified
        self.region_name: str = region_name or self.__session.region_name

    def get(self, service: str, region_name: str = None):
        """Retrieves an AWS client for the requested service, preferably from the cache. Caches any clients it creates.

        :param service: Name of the service as described in
            `boto3 docs <https://boto3.amazonaws.com/v1/documentation/api/latest/reference/services/index.html>`_
        :type service: str

        :param region_name: Name of the AWS region to set the client up for, such as "us-east-1".
        :type region_name: str, optional
        """

        region_name = region_name or self.region_name
        key = f'{service}-{region_name}'
        if key not in self.__clients:
            self.__clients[key] = self.__session.client(service, region_name=region_name)

        return self.__clients[key]


def configure_logging(level: str = 'INFO') -> logging.Logger:
    """Sets up the ``autoalarm`` logger with a single stream handler. Safe to call on every invocation; the handler is
    only installed once.

    :param level: Name of the log level, such as "DEBUG" or "INFO". Defaults to "INFO".
    :type level: str, optional

    :return: The configured ``autoalarm`` logger.
    :rtype: logging.Logger
    """

    logger = logging.getLogger('autoalarm')
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(name)s %(message)s'))
        logger.addHandler(handler)
        logger.propagate = False
    logger.setLevel(level.upper())
    return logger


def env_var_matches(name: str, matches: list[str], default: bool = False) -> bool:
    """Determines if the value of the given environment variable is in the given list. This is a case-insensitive check.

    :param name: The environment variable to check
    :type name: str

    :param matches: A list of strings to match against
    :type matches: list[str]

    :param default: Default value if the variable doesn't match. Defaults to False.
    :type default: bool, optional

    :return: True if the value of the given environment variable is in the given list, the provided `default` value if
        it is not, or `None` if the variable is unset.
    :rtype: bool
    """

    # Convert to lowercase for case-insensitive matching
    matches = [match.lower() for match in matches]
    value = environ.get(name, None)
    if value is None:
        return None
    if value.lower() in matches:
        return True
    return default


def env_var_is_true(name: str) -> bool:
    """Determines if the value of the given environment variable represents "True" in some way.

    :param name: The environment variable to check
    :type name: str

    :return: `True` if the value of the environment variable looks like it is set to an affirmative value, otherwise
        `False`.
    :rtype: bool
    """

    return env_var_matches(name, ['t', 'true', 'yes'], False)


def env_var_number(name: str, default: float) -> float:
    """Reads a numeric environment variable, falling back to a default when it is unset or not a number.

    :param name: The environment variable to read
    :type name: str

    :param default: Value to use when the variable is unset or unparseable
    :type default: float

    :rtype: float
    """

    value = environ.get(name, None)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        logging.getLogger(__name__).warning('Ignoring non-numeric value %r for %s', value, name)
        return default
