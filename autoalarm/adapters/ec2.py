"""EC2 instances. Memory and storage metrics come from the CloudWatch agent, whose metric names depend on whether the
instance runs Windows or Linux, so those configs are completed per instance."""

import dataclasses
import logging

from autoalarm import Dimension, MetricAlarmConfig, ResourceIdentity
from autoalarm.adapters import ServiceAdapter
from autoalarm.events import Event, StateChangeEvent, TagChangeEvent
from autoalarm.identity import alarm_key
from autoalarm.metrics import alarm_defaults
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)

#: Instance states in which an instance's alarms are kept up to date
LIVE_STATES = ['running', 'pending']
#: Instance states in which an instance's alarms are deleted
DEAD_STATES = ['terminated', 'shutting-down', 'stopped', 'stopping']

CWAGENT_NAMESPACE = 'CWAgent'
LINUX_MEMORY_METRIC = 'mem_used_percent'
WINDOWS_MEMORY_METRIC = 'Memory % Committed Bytes In Use'
LINUX_STORAGE_METRIC = 'disk_used_percent'
WINDOWS_STORAGE_METRIC = 'LogicalDisk % Free Space'

#: Dimensions the CloudWatch agent attaches to storage metrics
LINUX_STORAGE_DIMENSIONS = ['InstanceId', 'ImageId', 'InstanceType', 'device', 'path', 'fstype']
WINDOWS_STORAGE_DIMENSIONS = ['InstanceId', 'ImageId', 'InstanceType', 'instance', 'objectname']

#: Windows reports free space rather than used space, so its storage alarms look for low values
WINDOWS_STORAGE_DEFAULTS = alarm_defaults(
    warning_threshold=10,
    critical_threshold=5,
    period=300,
    evaluation_periods=2,
    data_points_to_alarm=1,
    comparison_operator='LessThanThreshold',
)


class Ec2Adapter(ServiceAdapter):
    """Adapts EC2 instances, identified by instance ID."""

    key = 'ec2'
    service = 'EC2'

    def __init__(self, clients):
        super().__init__(clients)
        self.__instances = {}

    @property
    def ec2(self):
        return self.clients.get('ec2')

    @property
    def cloudwatch(self):
        return self.clients.get('cloudwatch')

    def describe_instance(self, instance_id: str) -> dict | None:
        """Returns the instance's description, or ``None`` if it does not exist. Descriptions are cached for the life
        of the adapter."""

        if instance_id not in self.__instances:
            try:
                response = self.ec2.describe_instances(InstanceIds=[instance_id])
            except ClientError as err:
                if err.response.get('Error', {}).get('Code') == 'InvalidInstanceID.NotFound':
                    return None
                raise
            instances = [
                instance
                for reservation in response.get('Reservations', [])
                for instance in reservation.get('Instances', [])
            ]
            self.__instances[instance_id] = instances[0] if instances else None
        return self.__instances[instance_id]

    def is_windows(self, instance_id: str) -> bool:
        """Determines whether the instance runs Windows."""

        instance = self.describe_instance(instance_id) or {}
        platform = instance.get('PlatformDetails') or instance.get('Platform') or ''
        return 'windows' in platform.lower()

    def fetch_tags(self, resource_id: str) -> dict[str, str]:
        paginator = self.ec2.get_paginator('describe_tags')
        tags = {}
        for page in paginator.paginate(Filters=[{'Name': 'resource-id', 'Values': [resource_id]}]):
            for tag in page.get('Tags', []):
                tags[tag['Key']] = tag.get('Value', '')
        logger.debug('Instance %s has tags %s', resource_id, tags)
        return tags

    def service_identifier(self, resource_id: str) -> str:
        return resource_id

    def storage_paths(self, instance_id: str) -> dict[str, list[Dimension]]:
        """Finds the storage paths the CloudWatch agent reports on for an instance, along with the full set of
        dimensions of each path's metric.

        :param instance_id: ID of the instance.
        :type instance_id: str

        :return: Dimensions keyed by storage path.
        :rtype: dict[str, list[Dimension]]
        """

        windows = self.is_windows(instance_id)
        metric_name = WINDOWS_STORAGE_METRIC if windows else LINUX_STORAGE_METRIC
        required = WINDOWS_STORAGE_DIMENSIONS if windows else LINUX_STORAGE_DIMENSIONS
        path_dimension = 'instance' if windows else 'path'

        paginator = self.cloudwatch.get_paginator('list_metrics')
        paths = {}
        for page in paginator.paginate(
            Namespace=CWAGENT_NAMESPACE,
            MetricName=metric_name,
            Dimensions=[{'Name': 'InstanceId', 'Value': instance_id}],
        ):
            for metric in page.get('Metrics', []):
                values = {name: '' for name in required}
                values['InstanceId'] = instance_id
                for dimension in metric.get('Dimensions', []):
                    if dimension['Name'] in values and dimension.get('Value'):
                        values[dimension['Name']] = dimension['Value']
                path = values[path_dimension]
                if path:
                    paths[path] = [Dimension(name, values[name]) for name in required if values[name]]

        logger.debug('Instance %s reports storage paths %s', instance_id, sorted(paths))
        return paths

    def resource_identity(self, resource_id: str) -> ResourceIdentity:
        instance = self.describe_instance(resource_id) or {}
        return ResourceIdentity(
            service=self.service,
            service_identifier=resource_id,
            dimensions=[Dimension('InstanceId', resource_id)],
            storage_paths=self.storage_paths(resource_id),
            prometheus_instance=instance.get('PrivateIpAddress'),
        )

    def metric_alarm_configs(self, resource_id: str) -> list[MetricAlarmConfig]:
        windows = self.is_windows(resource_id)
        configs = []
        for config in super().metric_alarm_configs(resource_id):
            key = alarm_key(config)
            if key == 'memory':
                config = dataclasses.replace(
                    config, metric_name=WINDOWS_MEMORY_METRIC if windows else LINUX_MEMORY_METRIC
                )
            elif key == 'storage':
                config = dataclasses.replace(
                    config, metric_name=WINDOWS_STORAGE_METRIC if windows else LINUX_STORAGE_METRIC
                )
                if windows and not config.anomaly:
                    config = dataclasses.replace(config, defaults=WINDOWS_STORAGE_DEFAULTS)
            configs.append(config)
        return configs

    def instance_state(self, instance_id: str) -> str | None:
        """Returns the instance's state name, or ``None`` if it does not exist."""

        instance = self.describe_instance(instance_id)
        if instance is None:
            return None
        return instance.get('State', {}).get('Name')

    def is_live(self, event: Event) -> bool:
        if isinstance(event, StateChangeEvent):
            return event.state in LIVE_STATES
        if isinstance(event, TagChangeEvent):
            return self.instance_state(event.resource_id) in LIVE_STATES
        return super().is_live(event)
