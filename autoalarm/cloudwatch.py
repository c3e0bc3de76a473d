"""Reconciles a resource's CloudWatch alarms with its tags.

For each metric config, the resource's ``autoalarm:`` tag (or the config's defaults) decides which classifications
should have alarms. Those alarms are created or updated in place by name; the rest are deleted. After every config has
been handled, any alarm named for the resource and one of the service's metrics which this pass did not keep is deleted
too, which is how alarms for metrics that have since been turned off disappear.

Each put and delete stands alone. A failure is logged and the pass moves on to the next alarm.
"""

import logging

from autoalarm import (
    AlarmClassification,
    Dimension,
    MetricAlarmConfig,
    MetricAlarmOptions,
    ResourceIdentity,
)
from autoalarm.constants import (
    ANOMALY_BAND_METRIC_ID,
    ANOMALY_COMPARISON_OPERATORS,
    ANOMALY_PRIMARY_METRIC_ID,
    DELETE_ALARMS_BATCH_SIZE,
)
from autoalarm.identity import (
    alarm_key,
    alarm_name_prefix,
    alarm_names_for_config,
    build_alarm_name,
    config_variant,
    is_opted_out,
    is_owned_alarm_name,
    storage_paths_for,
    tag_name,
)
from autoalarm.options import normalize_options, parse_metric_alarm_options
from autoalarm.statistics import is_extended_statistic
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)


class CloudWatchAlarmManager:
    """Creates, updates, and deletes the alarms AutoAlarm owns in CloudWatch.

    :param client: A ``boto3`` CloudWatch client.
    """

    def __init__(self, client):
        self.client = client

    def reconcile_cloudwatch_alarms(
        self, identity: ResourceIdentity, tags: dict[str, str], configs: list[MetricAlarmConfig]
    ) -> set[str]:
        """Brings the resource's alarms in line with its tags.

        :param identity: The resource being alarmed on.
        :type identity: ResourceIdentity

        :param tags: All of the resource's tags. Tags not starting with ``autoalarm:`` are ignored.
        :type tags: dict[str, str]

        :param configs: The service's metric configs.
        :type configs: list[MetricAlarmConfig]

        :return: Names of the alarms this pass kept.
        :rtype: set[str]
        """

        existing = set(self.list_owned_alarm_names(identity.service, identity.service_identifier, configs))
        keep = set()

        for config in configs:
            keep.update(self._reconcile_config(identity, tags, config, existing))

        stale = sorted(existing - keep)
        if stale:
            logger.info('Deleting %d alarms no longer wanted for %s', len(stale), identity.service_identifier)
            self.delete_alarms(stale)

        logger.info('Kept %d alarms for %s %s', len(keep), identity.service, identity.service_identifier)
        return keep

    def _reconcile_config(
        self, identity: ResourceIdentity, tags: dict[str, str], config: MetricAlarmConfig, existing: set[str]
    ) -> set[str]:
        tag_value = tags.get(tag_name(config))
        if is_opted_out(config, tag_value):
            self._delete_if_present(alarm_names_for_config(identity, config), existing)
            return set()

        options = parse_metric_alarm_options(tag_value, config.defaults)
        options = normalize_options(options)

        kept = set()
        for storage_path in storage_paths_for(identity, config):
            dimensions = identity.storage_paths[storage_path] if storage_path else identity.dimensions
            for classification in AlarmClassification:
                name = build_alarm_name(
                    identity.service,
                    identity.service_identifier,
                    alarm_key(config),
                    classification,
                    config_variant(config),
                    storage_path,
                )
                threshold = options.threshold(classification)
                if threshold is None:
                    self._delete_if_present([name], existing)
                    continue

                if config.anomaly:
                    succeeded = self.create_or_update_anomaly_alarm(name, config, dimensions, options, threshold)
                else:
                    succeeded = self.create_or_update_static_alarm(name, config, dimensions, options, threshold)

                # An alarm which failed to update still exists with its old settings; don't clean it up
                if succeeded or name in existing:
                    kept.add(name)
        return kept

    def create_or_update_static_alarm(
        self,
        name: str,
        config: MetricAlarmConfig,
        dimensions: list[Dimension],
        options: MetricAlarmOptions,
        threshold: float,
    ) -> bool:
        """Puts a metric alarm comparing the metric against a fixed threshold.

        :param name: Name of the alarm.
        :type name: str

        :param config: The metric config.
        :type config: MetricAlarmConfig

        :param dimensions: Dimensions of the metric.
        :type dimensions: list[Dimension]

        :param options: Resolved options, with the period already normalized.
        :type options: MetricAlarmOptions

        :param threshold: The absolute metric value to alarm on.
        :type threshold: float

        :return: ``True`` if the alarm was put.
        :rtype: bool
        """

        if not config.metric_name:
            logger.warning('No metric name resolved for %s; not creating %s', config.tag_key, name)
            return False

        request = {
            'AlarmName': name,
            'AlarmDescription': f'Static threshold alarm for {config.metric_name} managed by AutoAlarm',
            'ActionsEnabled': False,
            'MetricName': config.metric_name,
            'Namespace': config.metric_namespace,
            'Dimensions': [dimension.to_api() for dimension in dimensions],
            'Period': options.period,
            'EvaluationPeriods': options.evaluation_periods,
            'DatapointsToAlarm': options.data_points_to_alarm,
            'Threshold': threshold,
            'ComparisonOperator': options.comparison_operator,
            'TreatMissingData': options.missing_data_treatment,
        }
        if is_extended_statistic(options.statistic):
            request['ExtendedStatistic'] = options.statistic
        else:
            request['Statistic'] = options.statistic

        try:
            self.client.put_metric_alarm(**request)
        except ClientError as err:
            logger.error('Failed to create or update alarm %s: %s', name, err)
            return False

        logger.info(
            'Put alarm %s (threshold=%s, period=%s, evaluation_periods=%s, statistic=%s)',
            name,
            threshold,
            options.period,
            options.evaluation_periods,
            options.statistic,
        )
        return True

    def create_or_update_anomaly_alarm(
        self,
        name: str,
        config: MetricAlarmConfig,
        dimensions: list[Dimension],
        options: MetricAlarmOptions,
        threshold: float,
    ) -> bool:
        """Puts an anomaly detector for the metric, then a metric alarm comparing the metric against the detector's
        expected band.

        :param name: Name of the alarm.
        :type name: str

        :param config: The metric config.
        :type config: MetricAlarmConfig

        :param dimensions: Dimensions of the metric.
        :type dimensions: list[Dimension]

        :param options: Resolved options, with the period already normalized.
        :type options: MetricAlarmOptions

        :param threshold: Width of the expected band in standard deviations. This is not a metric value.
        :type threshold: :py:data:`autoalarm.BandWidth`

        :return: ``True`` if both the detector and the alarm were put.
        :rtype: bool
        """

        if not config.metric_name:
            logger.warning('No metric name resolved for %s; not creating %s', config.tag_key, name)
            return False

        operator = options.comparison_operator
        if operator not in ANOMALY_COMPARISON_OPERATORS:
            logger.debug(
                '%s cannot be used with an anomaly band, using %s', operator, config.defaults.comparison_operator
            )
            operator = config.defaults.comparison_operator

        api_dimensions = [dimension.to_api() for dimension in dimensions]
        metric = {'Namespace': config.metric_namespace, 'MetricName': config.metric_name, 'Dimensions': api_dimensions}

        try:
            self.client.put_anomaly_detector(
                SingleMetricAnomalyDetector={**metric, 'Stat': options.statistic},
                Configuration={'MetricTimezone': 'UTC'},
            )
            self.client.put_metric_alarm(
                AlarmName=name,
                AlarmDescription=f'Anomaly detection alarm for {config.metric_name} managed by AutoAlarm',
                ActionsEnabled=False,
                EvaluationPeriods=options.evaluation_periods,
                DatapointsToAlarm=options.data_points_to_alarm,
                ComparisonOperator=operator,
                TreatMissingData=options.missing_data_treatment,
                ThresholdMetricId=ANOMALY_BAND_METRIC_ID,
                Metrics=[
                    {
                        'Id': ANOMALY_PRIMARY_METRIC_ID,
                        'MetricStat': {'Metric': metric, 'Period': options.period, 'Stat': options.statistic},
                        'ReturnData': True,
                    },
                    {
                        'Id': ANOMALY_BAND_METRIC_ID,
                        'Expression': f'ANOMALY_DETECTION_BAND({ANOMALY_PRIMARY_METRIC_ID}, {threshold})',
                        'Label': f'{config.metric_name} (expected)',
                        'ReturnData': True,
                    },
                ],
            )
        except ClientError as err:
            logger.error('Failed to create or update anomaly alarm %s: %s', name, err)
            return False

        logger.info('Put anomaly alarm %s (band width=%s, period=%s)', name, threshold, options.period)
        return True

    def delete_alarms(self, names: list[str]):
        """Deletes alarms by name, as many per call as the API allows.

        :param names: Names of the alarms to delete.
        :type names: list[str]
        """

        names = list(names)
        for idx in range(0, len(names), DELETE_ALARMS_BATCH_SIZE):
            chunk = names[idx : idx + DELETE_ALARMS_BATCH_SIZE]
            try:
                self.client.delete_alarms(AlarmNames=chunk)
            except ClientError as err:
                if err.response.get('Error', {}).get('Code') == 'ResourceNotFound':
                    logger.info('Some of %s were already deleted', chunk)
                    continue
                logger.error('Failed to delete alarms %s: %s', chunk, err)
                continue
            logger.info('Deleted alarms %s', chunk)

    def list_alarm_names(self, prefix: str) -> list[str]:
        """Lists the names of all metric alarms starting with a prefix.

        :param prefix: The prefix to match.
        :type prefix: str

        :rtype: list[str]
        """

        paginator = self.client.get_paginator('describe_alarms')
        names = []
        for page in paginator.paginate(AlarmNamePrefix=prefix, AlarmTypes=['MetricAlarm']):
            names.extend(alarm['AlarmName'] for alarm in page.get('MetricAlarms', []))
        return names

    def list_owned_alarm_names(
        self, service: str, service_identifier: str, configs: list[MetricAlarmConfig]
    ) -> list[str]:
        """Lists the alarms named for a resource and one of its service's configs. Alarms of other resources whose
        identifiers merely start with this one's are left out.

        :param service: Service name, as used in alarm names.
        :type service: str

        :param service_identifier: The resource's identifier, as used in alarm names.
        :type service_identifier: str

        :param configs: The service's metric configs.
        :type configs: list[MetricAlarmConfig]

        :rtype: list[str]
        """

        return [
            name
            for name in self.list_alarm_names(alarm_name_prefix(service, service_identifier))
            if is_owned_alarm_name(name, service, service_identifier, configs)
        ]

    def delete_all_alarms(self, service: str, service_identifier: str, configs: list[MetricAlarmConfig]) -> list[str]:
        """Deletes every alarm AutoAlarm owns for a resource.

        :param service: Service name, as used in alarm names.
        :type service: str

        :param service_identifier: The resource's identifier, as used in alarm names.
        :type service_identifier: str

        :param configs: The service's metric configs.
        :type configs: list[MetricAlarmConfig]

        :return: Names of the alarms deleted.
        :rtype: list[str]
        """

        names = self.list_owned_alarm_names(service, service_identifier, configs)
        if names:
            self.delete_alarms(names)
        else:
            logger.info('No alarms to delete for %s %s', service, service_identifier)
        return names

    def _delete_if_present(self, names: list[str], existing: set[str]):
        present = [name for name in names if name in existing]
        if present:
            self.delete_alarms(present)
            existing.difference_update(present)


def reconcile_cloudwatch_alarms(
    client, identity: ResourceIdentity, tags: dict[str, str], configs: list[MetricAlarmConfig]
) -> set[str]:
    """Reconciles a resource's alarms using the given CloudWatch client. See
    :py:meth:`CloudWatchAlarmManager.reconcile_cloudwatch_alarms`."""

    return CloudWatchAlarmManager(client).reconcile_cloudwatch_alarms(identity, tags, configs)


def delete_all_alarms(client, service: str, service_identifier: str, configs: list[MetricAlarmConfig]) -> list[str]:
    """Deletes every alarm for a resource using the given CloudWatch client. See
    :py:meth:`CloudWatchAlarmManager.delete_all_alarms`."""

    return CloudWatchAlarmManager(client).delete_all_alarms(service, service_identifier, configs)
