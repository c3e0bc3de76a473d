"""Alarm names and the decisions about which alarms should exist.

An alarm's name is its only identity. Names take the form::

    AutoAlarm-{service}-{service_identifier}-{alarm_key}[-{storage_path}]-[anomaly-]{classification}

so two alarms for the same resource, metric, storage path, classification and variant always share a name, and a
put with that name updates the alarm in place.
"""

from autoalarm import (
    AlarmClassification,
    AlarmVariant,
    MetricAlarmConfig,
    MetricAlarmOptions,
    ResourceIdentity,
)
from autoalarm.constants import ALARM_NAME_PREFIX, TAG_PREFIX

ANOMALY_TAG_SUFFIX = '-anomaly'


def alarm_key(config: MetricAlarmConfig) -> str:
    """Returns the segment of an alarm name identifying a config's metric. This is the config's tag key, less any
    ``-anomaly`` suffix, since the variant already appears later in the name."""

    if config.tag_key.endswith(ANOMALY_TAG_SUFFIX):
        return config.tag_key[: -len(ANOMALY_TAG_SUFFIX)]
    return config.tag_key


def config_variant(config: MetricAlarmConfig) -> AlarmVariant:
    """Returns the variant of alarm a config produces."""

    return AlarmVariant.ANOMALY if config.anomaly else AlarmVariant.STATIC


def tag_name(config: MetricAlarmConfig) -> str:
    """Returns the full name of the tag which overrides a config's defaults, such as ``autoalarm:cpu``."""

    return f'{TAG_PREFIX}{config.tag_key}'


def build_alarm_name(
    service: str,
    service_identifier: str,
    alarm_key: str,
    classification: AlarmClassification,
    variant: AlarmVariant,
    storage_path: str = None,
) -> str:
    """Builds the deterministic name of an alarm.

    :param service: Service name, such as ``EC2``.
    :type service: str

    :param service_identifier: ID or name of the resource.
    :type service_identifier: str

    :param alarm_key: Identifies the metric; see :py:func:`alarm_key`.
    :type alarm_key: str

    :param classification: Warning or critical.
    :type classification: AlarmClassification

    :param variant: Static or anomaly.
    :type variant: AlarmVariant

    :param storage_path: Disk path discriminating between several alarms on the same metric. Defaults to None.
    :type storage_path: str, optional

    :rtype: str
    """

    parts = [ALARM_NAME_PREFIX, service, service_identifier, alarm_key]
    if storage_path:
        parts.append(storage_path)
    if variant is AlarmVariant.ANOMALY:
        parts.append('anomaly')
    parts.append(classification.value)
    return '-'.join(parts)


def alarm_name_prefix(service: str, service_identifier: str) -> str:
    """Returns the prefix shared by every alarm of a resource. It ends in a dash so that the prefix for ``i-1`` does
    not also match the alarms of ``i-10``."""

    return f'{ALARM_NAME_PREFIX}-{service}-{service_identifier}-'


def is_owned_alarm_name(
    name: str, service: str, service_identifier: str, configs: list[MetricAlarmConfig]
) -> bool:
    """Determines whether an alarm name was built for a resource from one of a service's configs. Matching the resource
    prefix alone is not enough, since the prefix for queue ``orders`` is also a prefix of every alarm name for queue
    ``orders-dlq``.

    :param name: The alarm name to check.
    :type name: str

    :param service: Service name, such as ``SQS``.
    :type service: str

    :param service_identifier: ID or name of the resource.
    :type service_identifier: str

    :param configs: The service's metric configs.
    :type configs: list[MetricAlarmConfig]

    :rtype: bool
    """

    prefix = alarm_name_prefix(service, service_identifier)
    if not name.startswith(prefix):
        return False
    remainder = name[len(prefix) :]

    for config in configs:
        key = f'{alarm_key(config)}-'
        if not remainder.startswith(key):
            continue
        tail = remainder[len(key) :]
        anomaly = 'anomaly-' if config.anomaly else ''
        for classification in AlarmClassification:
            suffix = f'{anomaly}{classification.value}'
            if tail == suffix:
                return True
            # Storage alarms carry a non-empty path between the key and the classification
            if config.storage and tail.endswith(f'-{suffix}') and len(tail) > len(suffix) + 1:
                return True
    return False


def storage_paths_for(identity: ResourceIdentity, config: MetricAlarmConfig) -> list[str | None]:
    """Lists the storage paths a config builds alarms for on a resource. Configs which are not storage metrics, and
    storage metrics on resources with no known paths, build one alarm without a path."""

    if config.storage and identity.storage_paths:
        return sorted(identity.storage_paths.keys())
    return [None]


def alarm_names_for_config(identity: ResourceIdentity, config: MetricAlarmConfig) -> list[str]:
    """Lists every alarm name a config could own on a resource, across both classifications and every storage path.

    :param identity: The resource.
    :type identity: ResourceIdentity

    :param config: The metric config.
    :type config: MetricAlarmConfig

    :rtype: list[str]
    """

    return [
        build_alarm_name(
            identity.service,
            identity.service_identifier,
            alarm_key(config),
            classification,
            config_variant(config),
            storage_path,
        )
        for storage_path in storage_paths_for(identity, config)
        for classification in AlarmClassification
    ]


def wanted_classifications(options: MetricAlarmOptions) -> list[AlarmClassification]:
    """Returns the classifications whose threshold is set, which are the ones that should have alarms."""

    return [classification for classification in AlarmClassification if options.threshold(classification) is not None]


def is_opted_out(config: MetricAlarmConfig, tag_value: str | None) -> bool:
    """Determines whether a resource wants no alarms at all for a config: it carries no tag for the config, and the
    config is not created by default.

    :param config: The metric config.
    :type config: MetricAlarmConfig

    :param tag_value: Value of the config's tag on the resource, or ``None`` when the tag is absent.
    :type tag_value: str, optional

    :rtype: bool
    """

    return tag_value is None and not config.default_create
