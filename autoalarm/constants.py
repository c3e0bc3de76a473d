"""Some global values that should not change often and do not rely on runtime data."""

#: Every tag AutoAlarm reacts to begins with this prefix
TAG_PREFIX = 'autoalarm:'
#: Tag which turns all alarm management off for a resource when set to "false"
ENABLED_TAG = f'{TAG_PREFIX}enabled'
#: Tag which routes a resource's alarms to Prometheus ("Prometheus") or CloudWatch ("CloudWatch")
TARGET_TAG = f'{TAG_PREFIX}target'
#: Tag on an alarm which opts it out of ReAlarm resets when set to "false"
REALARM_ENABLED_TAG = f'{TAG_PREFIX}re-alarm-enabled'

#: All alarm names begin with this
ALARM_NAME_PREFIX = 'AutoAlarm'
#: Delimiter between fields of a tag override string
OVERRIDE_DELIMITER = '/'
#: Value of a threshold field which explicitly disables that classification
THRESHOLD_DISABLED = '-'

#: Canonical casing of CloudWatch's standard statistics, keyed by their lower-cased form
STANDARD_STATISTICS = {
    'samplecount': 'SampleCount',
    'average': 'Average',
    'sum': 'Sum',
    'minimum': 'Minimum',
    'maximum': 'Maximum',
}

#: Extended statistic families: percentile, trimmed mean, trimmed count, trimmed sum, winsorized mean
EXTENDED_STATISTIC_FAMILIES = ['p', 'tm', 'tc', 'ts', 'wm']
#: The interquartile mean takes no parameters
IQM_STATISTIC = 'IQM'
#: A statistic starting with any of these goes into a put-alarm request's ExtendedStatistic field
EXTENDED_STATISTIC_PREFIXES = ('p', 'tm', 'tc', 'ts', 'wm', 'iqm')

#: Comparison operators accepted by CloudWatch metric alarms
COMPARISON_OPERATORS = [
    'GreaterThanOrEqualToThreshold',
    'GreaterThanThreshold',
    'LessThanThreshold',
    'LessThanOrEqualToThreshold',
    'LessThanLowerOrGreaterThanUpperThreshold',
    'LessThanLowerThreshold',
    'GreaterThanUpperThreshold',
]
#: Only these operators make sense against an anomaly detection band
ANOMALY_COMPARISON_OPERATORS = [
    'LessThanLowerOrGreaterThanUpperThreshold',
    'LessThanLowerThreshold',
    'GreaterThanUpperThreshold',
]
#: Valid TreatMissingData values
MISSING_DATA_TREATMENTS = ['missing', 'ignore', 'breaching', 'notBreaching']

#: Most common settings for CloudWatch metric alarms; metric tables start from a copy of this
CLOUDWATCH_METRIC_ALARM_DEFAULTS = {
    'warning_threshold': None,
    'critical_threshold': None,
    'period': 60,
    'evaluation_periods': 5,
    'statistic': 'Average',
    'data_points_to_alarm': 5,
    'comparison_operator': 'GreaterThanThreshold',
    'missing_data_treatment': 'ignore',
}

#: DeleteAlarms accepts at most this many names per call
DELETE_ALARMS_BATCH_SIZE = 100
#: Metric IDs used in anomaly alarm metric math
ANOMALY_PRIMARY_METRIC_ID = 'primaryMetric'
ANOMALY_BAND_METRIC_ID = 'anomalyDetectionBand'

#: Name of the single rule group AutoAlarm manages within each Prometheus namespace
PROMETHEUS_RULE_GROUP_NAME = 'AutoAlarm'
#: Practical ceiling on alerting rules across a whole Managed Prometheus workspace
PROMETHEUS_RULE_LIMIT = 2000
#: Seconds to wait after creating a namespace before reading it back
NAMESPACE_PROPAGATION_DELAY = 90
#: Seconds between attempts to list namespaces
NAMESPACE_LIST_RETRY_DELAY = 60
NAMESPACE_LIST_ATTEMPTS = 3

#: Linear-incrementing backoff wrapped around whole reconciliation calls
BACKOFF_ATTEMPTS = 4
BACKOFF_INITIAL_DELAY = 5
BACKOFF_INCREMENT = 5

#: Error codes which mean we are sending too fast
THROTTLING_ERROR_CODES = [
    'AWS.SimpleQueueService.RequestThrottled',
    'RequestLimitExceeded',
    'Throttling',
    'ThrottlingException',
    'TooManyRequestsException',
]
#: SQS batch APIs accept at most this many entries
SQS_BATCH_SIZE = 10

#: Services AutoAlarm maintains alarms for, mapped to the queue which carries their events
SERVICE_QUEUES = {
    'alb': 'AutoAlarm-Alb',
    'ec2': 'AutoAlarm-Ec2',
    'opensearch': 'AutoAlarm-OpenSearch',
    'sqs': 'AutoAlarm-Sqs',
    'targetgroup': 'AutoAlarm-TargetGroup',
}

#: AWS IAM Assume Role Policies often follow this template.
ASSUME_ROLE_POLICY = {
    'Version': '2012-10-17',
    'Statement': [{'Sid': '', 'Effect': 'Allow', 'Principal': {'Service': None}, 'Action': 'sts:AssumeRole'}],
}

#: IAM policies often extend this template.
IAM_POLICY_DOCUMENT = {'Version': '2012-10-17', 'Statement': [{'Sid': 'DefaultSid', 'Effect': 'Allow'}]}

# Global default values to fall back on
DEFAULT_PROTECTED_STACKS = ['prod']  #: Which Pulumi stacks should get resource protection by default
