"""Adapters between AWS services and the reconciliation engines. An adapter knows how to fetch a resource's tags, how
to identify its metrics, and whether an event means the resource is alive or gone. The engines themselves know nothing
about any particular service.
"""

import logging

from abc import ABC, abstractmethod
from autoalarm import AwsClients, MetricAlarmConfig, ResourceIdentity
from autoalarm.events import CloudTrailEvent, Event, TagChangeEvent
from autoalarm.metrics import METRIC_ALARM_CONFIGS

logger = logging.getLogger(__name__)


class ServiceAdapter(ABC):
    """Base class for everything AutoAlarm needs to know about one AWS service.

    :param clients: Source of the AWS clients this adapter calls.
    :type clients: :py:class:`autoalarm.AwsClients`
    """

    #: Service key, as used in :py:data:`autoalarm.metrics.METRIC_ALARM_CONFIGS`
    key: str = None
    #: Service name as it appears in alarm names
    service: str = None

    def __init__(self, clients: AwsClients):
        self.clients = clients

    @abstractmethod
    def fetch_tags(self, resource_id: str) -> dict[str, str]:
        """Returns all of a resource's tags."""

    @abstractmethod
    def resource_identity(self, resource_id: str) -> ResourceIdentity:
        """Describes the resource for the reconciliation engines."""

    @abstractmethod
    def service_identifier(self, resource_id: str) -> str:
        """Returns the identifier the resource's alarms are named with. This must not call any AWS APIs, since it is
        used after the resource has been deleted."""

    def resolve_resource_id(self, resource_id: str) -> str:
        """Converts the resource ID found in an event into the one this adapter's other methods expect. Most services
        need no conversion."""

        return resource_id

    def metric_alarm_configs(self, resource_id: str) -> list[MetricAlarmConfig]:
        """Returns the metric configs to reconcile for a resource. Defaults to the service's static table."""

        return list(METRIC_ALARM_CONFIGS[self.key])

    def is_live(self, event: Event) -> bool:
        """Determines whether an event leaves its resource in a state worth alarming on. By default, tag changes and
        any API call except a deletion leave the resource alive."""

        if isinstance(event, CloudTrailEvent):
            return not event.is_delete
        if isinstance(event, TagChangeEvent):
            return True
        logger.warning('%s adapter cannot judge %s events', self.service, type(event).__name__)
        return False

    @property
    def supports_prometheus(self) -> bool:
        """``True`` when some of the service's metrics can be alarmed on through Prometheus."""

        return any(config.prometheus_expression for config in METRIC_ALARM_CONFIGS[self.key])


def get_adapter(key: str, clients: AwsClients) -> ServiceAdapter:
    """Builds the adapter for a service.

    :param key: Service key, such as ``ec2``.
    :type key: str

    :param clients: Source of AWS clients.
    :type clients: :py:class:`autoalarm.AwsClients`

    :raises KeyError: When no adapter exists for the service.

    :rtype: ServiceAdapter
    """

    # Imported here since each adapter module imports this one for ServiceAdapter
    from autoalarm.adapters.ec2 import Ec2Adapter
    from autoalarm.adapters.elb import AlbAdapter, TargetGroupAdapter
    from autoalarm.adapters.opensearch import OpenSearchAdapter
    from autoalarm.adapters.sqs import SqsAdapter

    adapters = {
        'alb': AlbAdapter,
        'ec2': Ec2Adapter,
        'opensearch': OpenSearchAdapter,
        'sqs': SqsAdapter,
        'targetgroup': TargetGroupAdapter,
    }
    return adapters[key](clients)
