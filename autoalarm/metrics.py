"""The metrics AutoAlarm knows how to alarm on, per service. Each list is ordered alphabetically by tag key.

Anomaly configs take band widths (in standard deviations) as their thresholds; see :py:data:`autoalarm.BandWidth`.
Prometheus expressions are ``str.format`` templates with ``{instance}``, ``{operator}``, and ``{threshold}``
placeholders, so literal braces in PromQL selectors are doubled.
"""

from autoalarm import MetricAlarmConfig, MetricAlarmOptions
from autoalarm.constants import CLOUDWATCH_METRIC_ALARM_DEFAULTS, ENABLED_TAG, TAG_PREFIX, TARGET_TAG


def alarm_defaults(**overrides) -> MetricAlarmOptions:
    """Builds a metric's default options by overriding :py:data:`autoalarm.constants.CLOUDWATCH_METRIC_ALARM_DEFAULTS`.

    :param overrides: Any fields of :py:class:`autoalarm.MetricAlarmOptions`.

    :rtype: MetricAlarmOptions
    """

    options = CLOUDWATCH_METRIC_ALARM_DEFAULTS.copy()
    options.update(overrides)
    return MetricAlarmOptions(**options)


#: Defaults shared by every anomaly config: alarm when the metric rises above a band 2 (warning) or 3 (critical)
#: standard deviations wide for 2 of 2 five-minute periods
ANOMALY_DEFAULTS = alarm_defaults(
    warning_threshold=2,
    critical_threshold=3,
    period=300,
    evaluation_periods=2,
    data_points_to_alarm=2,
    comparison_operator='GreaterThanUpperThreshold',
)

# Node exporter reports instance as "host:port"
PROMETHEUS_CPU_EXPRESSION = (
    '100 - (avg by (instance) (rate(node_cpu_seconds_total{{mode="idle", instance=~"{instance}(:[0-9]+)?"}}[5m]))'
    ' * 100) {operator} {threshold}'
)
PROMETHEUS_MEMORY_EXPRESSION = (
    '100 * (1 - node_memory_MemAvailable_bytes{{instance=~"{instance}(:[0-9]+)?"}}'
    ' / node_memory_MemTotal_bytes{{instance=~"{instance}(:[0-9]+)?"}}) {operator} {threshold}'
)
PROMETHEUS_STORAGE_EXPRESSION = (
    'max by (instance) (100 * (1 - node_filesystem_avail_bytes{{instance=~"{instance}(:[0-9]+)?", '
    'fstype!~"tmpfs|overlay"}} / node_filesystem_size_bytes{{instance=~"{instance}(:[0-9]+)?", '
    'fstype!~"tmpfs|overlay"}})) {operator} {threshold}'
)

EC2_METRIC_ALARM_CONFIGS = [
    MetricAlarmConfig(
        tag_key='cpu',
        metric_name='CPUUtilization',
        metric_namespace='AWS/EC2',
        default_create=True,
        anomaly=False,
        defaults=alarm_defaults(warning_threshold=95, critical_threshold=98, period=300),
        prometheus_expression=PROMETHEUS_CPU_EXPRESSION,
    ),
    MetricAlarmConfig(
        tag_key='cpu-anomaly',
        metric_name='CPUUtilization',
        metric_namespace='AWS/EC2',
        default_create=False,
        anomaly=True,
        defaults=ANOMALY_DEFAULTS,
    ),
    # Memory and storage metric names depend on the instance's platform and are filled in by the EC2 adapter
    MetricAlarmConfig(
        tag_key='memory',
        metric_name='',
        metric_namespace='CWAgent',
        default_create=True,
        anomaly=False,
        defaults=alarm_defaults(warning_threshold=95, critical_threshold=98, period=300),
        prometheus_expression=PROMETHEUS_MEMORY_EXPRESSION,
    ),
    MetricAlarmConfig(
        tag_key='memory-anomaly',
        metric_name='',
        metric_namespace='CWAgent',
        default_create=False,
        anomaly=True,
        defaults=ANOMALY_DEFAULTS,
    ),
    MetricAlarmConfig(
        tag_key='network-in',
        metric_name='NetworkIn',
        metric_namespace='AWS/EC2',
        default_create=False,
        anomaly=False,
        defaults=alarm_defaults(period=300, statistic='Sum'),
    ),
    MetricAlarmConfig(
        tag_key='network-in-anomaly',
        metric_name='NetworkIn',
        metric_namespace='AWS/EC2',
        default_create=False,
        anomaly=True,
        defaults=ANOMALY_DEFAULTS,
    ),
    MetricAlarmConfig(
        tag_key='network-out',
        metric_name='NetworkOut',
        metric_namespace='AWS/EC2',
        default_create=False,
        anomaly=False,
        defaults=alarm_defaults(period=300, statistic='Sum'),
    ),
    MetricAlarmConfig(
        tag_key='network-out-anomaly',
        metric_name='NetworkOut',
        metric_namespace='AWS/EC2',
        default_create=False,
        anomaly=True,
        defaults=ANOMALY_DEFAULTS,
    ),
    MetricAlarmConfig(
        tag_key='storage',
        metric_name='',
        metric_namespace='CWAgent',
        default_create=True,
        anomaly=False,
        defaults=alarm_defaults(
            warning_threshold=90, critical_threshold=95, period=300, evaluation_periods=2, data_points_to_alarm=1
        ),
        prometheus_expression=PROMETHEUS_STORAGE_EXPRESSION,
        storage=True,
    ),
]

SQS_METRIC_ALARM_CONFIGS = [
    MetricAlarmConfig(
        tag_key='age-of-oldest-message',
        metric_name='ApproximateAgeOfOldestMessage',
        metric_namespace='AWS/SQS',
        default_create=False,
        anomaly=False,
        defaults=alarm_defaults(statistic='Maximum'),
    ),
    MetricAlarmConfig(
        tag_key='age-of-oldest-message-anomaly',
        metric_name='ApproximateAgeOfOldestMessage',
        metric_namespace='AWS/SQS',
        default_create=False,
        anomaly=True,
        defaults=ANOMALY_DEFAULTS,
    ),
    MetricAlarmConfig(
        tag_key='empty-receives',
        metric_name='NumberOfEmptyReceives',
        metric_namespace='AWS/SQS',
        default_create=False,
        anomaly=False,
        defaults=alarm_defaults(statistic='Sum'),
    ),
    MetricAlarmConfig(
        tag_key='messages-sent',
        metric_name='NumberOfMessagesSent',
        metric_namespace='AWS/SQS',
        default_create=False,
        anomaly=False,
        defaults=alarm_defaults(statistic='Sum'),
    ),
    MetricAlarmConfig(
        tag_key='messages-sent-anomaly',
        metric_name='NumberOfMessagesSent',
        metric_namespace='AWS/SQS',
        default_create=False,
        anomaly=True,
        defaults=ANOMALY_DEFAULTS,
    ),
    MetricAlarmConfig(
        tag_key='messages-visible',
        metric_name='ApproximateNumberOfMessagesVisible',
        metric_namespace='AWS/SQS',
        default_create=False,
        anomaly=False,
        defaults=alarm_defaults(statistic='Maximum'),
    ),
    MetricAlarmConfig(
        tag_key='messages-visible-anomaly',
        metric_name='ApproximateNumberOfMessagesVisible',
        metric_namespace='AWS/SQS',
        default_create=False,
        anomaly=True,
        defaults=ANOMALY_DEFAULTS,
    ),
]

ALB_METRIC_ALARM_CONFIGS = [
    MetricAlarmConfig(
        tag_key='4xx-count',
        metric_name='HTTPCode_ELB_4XX_Count',
        metric_namespace='AWS/ApplicationELB',
        default_create=False,
        anomaly=False,
        defaults=alarm_defaults(statistic='Sum'),
    ),
    MetricAlarmConfig(
        tag_key='4xx-count-anomaly',
        metric_name='HTTPCode_ELB_4XX_Count',
        metric_namespace='AWS/ApplicationELB',
        default_create=False,
        anomaly=True,
        defaults=alarm_defaults(
            warning_threshold=2,
            critical_threshold=3,
            period=300,
            evaluation_periods=2,
            statistic='Sum',
            data_points_to_alarm=2,
            comparison_operator='GreaterThanUpperThreshold',
        ),
    ),
    MetricAlarmConfig(
        tag_key='5xx-count',
        metric_name='HTTPCode_ELB_5XX_Count',
        metric_namespace='AWS/ApplicationELB',
        default_create=False,
        anomaly=False,
        defaults=alarm_defaults(statistic='Sum'),
    ),
    MetricAlarmConfig(
        tag_key='5xx-count-anomaly',
        metric_name='HTTPCode_ELB_5XX_Count',
        metric_namespace='AWS/ApplicationELB',
        default_create=True,
        anomaly=True,
        defaults=alarm_defaults(
            warning_threshold=None,
            critical_threshold=3,
            period=300,
            evaluation_periods=2,
            statistic='Sum',
            data_points_to_alarm=2,
            comparison_operator='GreaterThanUpperThreshold',
        ),
    ),
    MetricAlarmConfig(
        tag_key='request-count',
        metric_name='RequestCount',
        metric_namespace='AWS/ApplicationELB',
        default_create=False,
        anomaly=False,
        defaults=alarm_defaults(statistic='Sum'),
    ),
    MetricAlarmConfig(
        tag_key='request-count-anomaly',
        metric_name='RequestCount',
        metric_namespace='AWS/ApplicationELB',
        default_create=False,
        anomaly=True,
        defaults=ANOMALY_DEFAULTS,
    ),
]

TARGET_GROUP_METRIC_ALARM_CONFIGS = [
    MetricAlarmConfig(
        tag_key='4xx-count',
        metric_name='HTTPCode_Target_4XX_Count',
        metric_namespace='AWS/ApplicationELB',
        default_create=False,
        anomaly=False,
        defaults=alarm_defaults(statistic='Sum'),
    ),
    MetricAlarmConfig(
        tag_key='4xx-count-anomaly',
        metric_name='HTTPCode_Target_4XX_Count',
        metric_namespace='AWS/ApplicationELB',
        default_create=False,
        anomaly=True,
        defaults=ANOMALY_DEFAULTS,
    ),
    MetricAlarmConfig(
        tag_key='5xx-count',
        metric_name='HTTPCode_Target_5XX_Count',
        metric_namespace='AWS/ApplicationELB',
        default_create=False,
        anomaly=False,
        defaults=alarm_defaults(statistic='Sum'),
    ),
    MetricAlarmConfig(
        tag_key='5xx-count-anomaly',
        metric_name='HTTPCode_Target_5XX_Count',
        metric_namespace='AWS/ApplicationELB',
        default_create=False,
        anomaly=True,
        defaults=ANOMALY_DEFAULTS,
    ),
    MetricAlarmConfig(
        tag_key='healthy-host-count',
        metric_name='HealthyHostCount',
        metric_namespace='AWS/ApplicationELB',
        default_create=False,
        anomaly=False,
        defaults=alarm_defaults(
            warning_threshold=None,
            critical_threshold=1,
            statistic='Minimum',
            comparison_operator='LessThanThreshold',
            missing_data_treatment='breaching',
        ),
    ),
    MetricAlarmConfig(
        tag_key='response-time',
        metric_name='TargetResponseTime',
        metric_namespace='AWS/ApplicationELB',
        default_create=False,
        anomaly=False,
        defaults=alarm_defaults(warning_threshold=3, critical_threshold=5, period=300, statistic='p90'),
    ),
    MetricAlarmConfig(
        tag_key='response-time-anomaly',
        metric_name='TargetResponseTime',
        metric_namespace='AWS/ApplicationELB',
        default_create=False,
        anomaly=True,
        defaults=alarm_defaults(
            warning_threshold=2,
            critical_threshold=3,
            period=300,
            evaluation_periods=2,
            statistic='p90',
            data_points_to_alarm=2,
            comparison_operator='GreaterThanUpperThreshold',
        ),
    ),
    MetricAlarmConfig(
        tag_key='unhealthy-host-count',
        metric_name='UnHealthyHostCount',
        metric_namespace='AWS/ApplicationELB',
        default_create=True,
        anomaly=False,
        defaults=alarm_defaults(
            warning_threshold=None,
            critical_threshold=1,
            statistic='Maximum',
            comparison_operator='GreaterThanOrEqualToThreshold',
        ),
    ),
]

#: OpenSearch Service publishes domain metrics under the legacy Elasticsearch namespace
OPENSEARCH_NAMESPACE = 'AWS/ES'

OPENSEARCH_METRIC_ALARM_CONFIGS = [
    MetricAlarmConfig(
        tag_key='4xx-errors',
        metric_name='4xx',
        metric_namespace=OPENSEARCH_NAMESPACE,
        default_create=False,
        anomaly=False,
        defaults=alarm_defaults(statistic='Sum'),
    ),
    MetricAlarmConfig(
        tag_key='4xx-errors-anomaly',
        metric_name='4xx',
        metric_namespace=OPENSEARCH_NAMESPACE,
        default_create=False,
        anomaly=True,
        defaults=ANOMALY_DEFAULTS,
    ),
    MetricAlarmConfig(
        tag_key='5xx-errors',
        metric_name='5xx',
        metric_namespace=OPENSEARCH_NAMESPACE,
        default_create=False,
        anomaly=False,
        defaults=alarm_defaults(statistic='Sum'),
    ),
    MetricAlarmConfig(
        tag_key='5xx-errors-anomaly',
        metric_name='5xx',
        metric_namespace=OPENSEARCH_NAMESPACE,
        default_create=False,
        anomaly=True,
        defaults=ANOMALY_DEFAULTS,
    ),
    MetricAlarmConfig(
        tag_key='cpu',
        metric_name='CPUUtilization',
        metric_namespace=OPENSEARCH_NAMESPACE,
        default_create=True,
        anomaly=False,
        defaults=alarm_defaults(warning_threshold=80, critical_threshold=90),
    ),
    MetricAlarmConfig(
        tag_key='cpu-anomaly',
        metric_name='CPUUtilization',
        metric_namespace=OPENSEARCH_NAMESPACE,
        default_create=False,
        anomaly=True,
        defaults=ANOMALY_DEFAULTS,
    ),
    MetricAlarmConfig(
        tag_key='index-writes-blocked',
        metric_name='ClusterIndexWritesBlocked',
        metric_namespace=OPENSEARCH_NAMESPACE,
        default_create=False,
        anomaly=False,
        defaults=alarm_defaults(
            critical_threshold=1, statistic='Maximum', comparison_operator='GreaterThanOrEqualToThreshold'
        ),
    ),
    MetricAlarmConfig(
        tag_key='jvm-memory',
        metric_name='JVMMemoryPressure',
        metric_namespace=OPENSEARCH_NAMESPACE,
        default_create=True,
        anomaly=False,
        defaults=alarm_defaults(warning_threshold=80, critical_threshold=90, statistic='Maximum'),
    ),
    MetricAlarmConfig(
        tag_key='jvm-memory-anomaly',
        metric_name='JVMMemoryPressure',
        metric_namespace=OPENSEARCH_NAMESPACE,
        default_create=False,
        anomaly=True,
        defaults=ANOMALY_DEFAULTS,
    ),
    # Cluster health metrics are 1 while the cluster is in that state
    MetricAlarmConfig(
        tag_key='red-cluster',
        metric_name='ClusterStatus.red',
        metric_namespace=OPENSEARCH_NAMESPACE,
        default_create=True,
        anomaly=False,
        defaults=alarm_defaults(
            critical_threshold=1, statistic='Maximum', comparison_operator='GreaterThanOrEqualToThreshold'
        ),
    ),
    MetricAlarmConfig(
        tag_key='search-latency',
        metric_name='SearchLatency',
        metric_namespace=OPENSEARCH_NAMESPACE,
        default_create=False,
        anomaly=False,
        defaults=alarm_defaults(statistic='p90'),
    ),
    MetricAlarmConfig(
        tag_key='snapshot-failure',
        metric_name='AutomatedSnapshotFailure',
        metric_namespace=OPENSEARCH_NAMESPACE,
        default_create=False,
        anomaly=False,
        defaults=alarm_defaults(
            critical_threshold=1, statistic='Maximum', comparison_operator='GreaterThanOrEqualToThreshold'
        ),
    ),
    # FreeStorageSpace is reported in megabytes
    MetricAlarmConfig(
        tag_key='storage',
        metric_name='FreeStorageSpace',
        metric_namespace=OPENSEARCH_NAMESPACE,
        default_create=True,
        anomaly=False,
        defaults=alarm_defaults(
            warning_threshold=20480,
            critical_threshold=10240,
            statistic='Minimum',
            comparison_operator='LessThanOrEqualToThreshold',
        ),
    ),
    MetricAlarmConfig(
        tag_key='write-latency',
        metric_name='IndexingLatency',
        metric_namespace=OPENSEARCH_NAMESPACE,
        default_create=False,
        anomaly=False,
        defaults=alarm_defaults(statistic='p90'),
    ),
    MetricAlarmConfig(
        tag_key='yellow-cluster',
        metric_name='ClusterStatus.yellow',
        metric_namespace=OPENSEARCH_NAMESPACE,
        default_create=True,
        anomaly=False,
        defaults=alarm_defaults(
            warning_threshold=1, statistic='Maximum', comparison_operator='GreaterThanOrEqualToThreshold'
        ),
    ),
]

#: Metric configs keyed by the service keys used in :py:data:`autoalarm.constants.SERVICE_QUEUES`
METRIC_ALARM_CONFIGS = {
    'alb': ALB_METRIC_ALARM_CONFIGS,
    'ec2': EC2_METRIC_ALARM_CONFIGS,
    'opensearch': OPENSEARCH_METRIC_ALARM_CONFIGS,
    'sqs': SQS_METRIC_ALARM_CONFIGS,
    'targetgroup': TARGET_GROUP_METRIC_ALARM_CONFIGS,
}


def changed_tag_keys(service: str) -> list[str]:
    """Lists every tag whose change should trigger reconciliation of a service's resources.

    :param service: A key of :py:data:`METRIC_ALARM_CONFIGS`.
    :type service: str

    :rtype: list[str]
    """

    keys = [ENABLED_TAG]
    if service == 'ec2':
        keys.append(TARGET_TAG)
    keys.extend(f'{TAG_PREFIX}{config.tag_key}' for config in METRIC_ALARM_CONFIGS[service])
    return keys
