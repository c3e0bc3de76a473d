"""The main Lambda function. It consumes batches of EventBridge events from the per-service FIFO queues, works out
which resource each event is about, and reconciles or deletes that resource's alarms.

Records are handled in three phases so that Prometheus rules for a whole batch are written in a single pass over each
service's namespace:

    1. Every record is parsed and its resource examined. Dead and disabled resources have their alarms deleted right
       away; live ones are queued up for reconciliation.
    2. Resources routed to Prometheus are reconciled per service. If the workspace is missing or full, those resources
       fall back to CloudWatch.
    3. Every live resource is reconciled in CloudWatch. Resources whose rules went to Prometheus only get CloudWatch
       alarms for metrics Prometheus cannot alarm on.

A record which fails in any phase is reported in ``batchItemFailures`` so SQS redelivers it, and the other records of
the batch carry on.
"""

import logging
import time

from autoalarm import AwsClients, MetricAlarmConfig, ResourceIdentity, configure_logging
from autoalarm.adapters import ServiceAdapter, get_adapter
from autoalarm.cloudwatch import delete_all_alarms, reconcile_cloudwatch_alarms
from autoalarm.constants import ENABLED_TAG, TARGET_TAG
from autoalarm.events import TagChangeEvent, parse_event
from autoalarm.exceptions import PrometheusFatalError
from autoalarm.metrics import METRIC_ALARM_CONFIGS
from autoalarm.prometheus import delete_prometheus_rules, reconcile_prometheus_rules
from autoalarm.settings import Settings
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

#: Clients survive between invocations of a warm Lambda
_clients: AwsClients = None


def get_clients() -> AwsClients:
    """Returns the process-wide :py:class:`autoalarm.AwsClients`, building it on first use."""

    global _clients
    if _clients is None:
        _clients = AwsClients()
    return _clients


@dataclass
class PendingReconciliation:
    """A live resource waiting to have its alarms reconciled."""

    message_id: str
    adapter: ServiceAdapter
    identity: ResourceIdentity
    tags: dict[str, str]
    configs: list[MetricAlarmConfig]
    prometheus: bool = False


def wants_prometheus(adapter: ServiceAdapter, tags: dict[str, str], settings: Settings) -> bool:
    """Determines whether a resource's alarms should be Prometheus rules. This needs a configured workspace, a service
    with Prometheus metrics, and an ``autoalarm:target`` tag of "Prometheus"."""

    return (
        settings.prometheus_enabled
        and adapter.supports_prometheus
        and tags.get(TARGET_TAG, '').strip().lower() == 'prometheus'
    )


def remove_resource_alarms(
    adapter: ServiceAdapter,
    resource_id: str,
    clients: AwsClients,
    settings: Settings,
    sleep: Callable[[float], None] = time.sleep,
):
    """Deletes every CloudWatch alarm and Prometheus rule belonging to a resource. Makes no calls to the resource's own
    service, so this works on resources which no longer exist.

    :param adapter: Adapter for the resource's service.
    :type adapter: ServiceAdapter

    :param resource_id: The resource's ID, as the adapter expects it.
    :type resource_id: str

    :param clients: Source of AWS clients.
    :type clients: AwsClients

    :param settings: Runtime settings.
    :type settings: Settings

    :param sleep: Function to wait with. Defaults to ``time.sleep``.
    :type sleep: Callable[[float], None], optional
    """

    identifier = adapter.service_identifier(resource_id)
    deleted = delete_all_alarms(
        clients.get('cloudwatch'), adapter.service, identifier, METRIC_ALARM_CONFIGS[adapter.key]
    )
    logger.info('Deleted %d alarms for %s %s', len(deleted), adapter.service, identifier)

    if settings.prometheus_enabled and adapter.supports_prometheus:
        delete_prometheus_rules(
            clients.get('amp'),
            settings.prometheus_workspace_id,
            adapter.service,
            [identifier],
            settings=settings,
            sleep=sleep,
        )


def examine_record(
    record: dict, clients: AwsClients, settings: Settings, sleep: Callable[[float], None] = time.sleep
) -> PendingReconciliation | None:
    """Handles everything about one SQS record except reconciliation itself.

    :param record: An SQS record whose body is an EventBridge event.
    :type record: dict

    :param clients: Source of AWS clients.
    :type clients: AwsClients

    :param settings: Runtime settings.
    :type settings: Settings

    :param sleep: Function to wait with. Defaults to ``time.sleep``.
    :type sleep: Callable[[float], None], optional

    :return: The resource to reconcile, or ``None`` if there is nothing more to do.
    :rtype: PendingReconciliation | None
    """

    event = parse_event(record.get('body', ''))
    adapter = get_adapter(event.service, clients)
    resource_id = adapter.resolve_resource_id(event.resource_id)
    logger.info('Handling %s for %s %s', type(event).__name__, adapter.service, resource_id)

    if not adapter.is_live(event):
        if isinstance(event, TagChangeEvent):
            logger.info('%s %s is not running; ignoring its tag change', adapter.service, resource_id)
            return None
        remove_resource_alarms(adapter, resource_id, clients, settings, sleep=sleep)
        return None

    tags = adapter.fetch_tags(resource_id)
    if tags.get(ENABLED_TAG, '').strip().lower() == 'false':
        logger.info('Alarms are disabled for %s %s', adapter.service, resource_id)
        remove_resource_alarms(adapter, resource_id, clients, settings, sleep=sleep)
        return None

    identity = adapter.resource_identity(resource_id)
    prometheus = wants_prometheus(adapter, tags, settings)

    # Rules left behind by a resource which has moved back to CloudWatch
    if (
        not prometheus
        and settings.prometheus_enabled
        and adapter.supports_prometheus
        and isinstance(event, TagChangeEvent)
        and TARGET_TAG in event.changed_tag_keys
    ):
        delete_prometheus_rules(
            clients.get('amp'),
            settings.prometheus_workspace_id,
            identity.service,
            [identity.service_identifier],
            settings=settings,
            sleep=sleep,
        )

    return PendingReconciliation(
        message_id=record.get('messageId'),
        adapter=adapter,
        identity=identity,
        tags=tags,
        configs=adapter.metric_alarm_configs(resource_id),
        prometheus=prometheus,
    )


def reconcile_prometheus_batch(
    pending: list[PendingReconciliation],
    clients: AwsClients,
    settings: Settings,
    sleep: Callable[[float], None] = time.sleep,
) -> set[str]:
    """Reconciles the Prometheus rules of every pending resource routed to Prometheus, one pass per service. Resources
    of a service whose workspace turns out to be unusable are switched back to CloudWatch.

    :return: Message IDs of records whose reconciliation failed.
    :rtype: set[str]
    """

    by_service = {}
    for item in pending:
        if item.prometheus:
            by_service.setdefault(item.identity.service, []).append(item)

    failed = set()
    for service, items in by_service.items():
        try:
            reconcile_prometheus_rules(
                clients.get('amp'),
                settings.prometheus_workspace_id,
                service,
                [(item.identity, item.tags, item.configs) for item in items],
                settings=settings,
                sleep=sleep,
            )
        except PrometheusFatalError as err:
            logger.warning('Falling back to CloudWatch for %d %s resources: %s', len(items), service, err)
            for item in items:
                item.prometheus = False
        except Exception:
            logger.exception('Could not reconcile Prometheus rules for %s', service)
            failed.update(item.message_id for item in items)
    return failed


def reconcile_cloudwatch(item: PendingReconciliation, clients: AwsClients) -> set[str]:
    """Reconciles one resource's CloudWatch alarms. Metrics already covered by Prometheus rules are left out, which
    also deletes any CloudWatch alarms they used to have."""

    configs = item.configs
    if item.prometheus:
        configs = [config for config in configs if not config.prometheus_expression]
    return reconcile_cloudwatch_alarms(clients.get('cloudwatch'), item.identity, item.tags, configs)


def process_records(
    records: list[dict], clients: AwsClients, settings: Settings, sleep: Callable[[float], None] = time.sleep
) -> dict:
    """Handles a batch of SQS records.

    :param records: The ``Records`` of an SQS event.
    :type records: list[dict]

    :param clients: Source of AWS clients.
    :type clients: AwsClients

    :param settings: Runtime settings.
    :type settings: Settings

    :param sleep: Function to wait with. Defaults to ``time.sleep``.
    :type sleep: Callable[[float], None], optional

    :return: A partial batch response naming the records which failed.
    :rtype: dict
    """

    failed = []
    pending = []
    for record in records:
        try:
            item = examine_record(record, clients, settings, sleep=sleep)
        except Exception:
            logger.exception('Failed to handle message %s', record.get('messageId'))
            failed.append(record.get('messageId'))
            continue
        if item is not None:
            pending.append(item)

    prometheus_failures = reconcile_prometheus_batch(pending, clients, settings, sleep=sleep)
    failed.extend(message_id for message_id in prometheus_failures if message_id not in failed)

    for item in pending:
        if item.message_id in prometheus_failures:
            continue
        try:
            kept = reconcile_cloudwatch(item, clients)
            logger.info('%s %s has %d alarms', item.identity.service, item.identity.service_identifier, len(kept))
        except Exception:
            logger.exception('Failed to reconcile alarms for message %s', item.message_id)
            if item.message_id not in failed:
                failed.append(item.message_id)

    return {'batchItemFailures': [{'itemIdentifier': message_id} for message_id in failed]}


def handler(event: dict, context) -> dict:
    """Lambda entry point for the main AutoAlarm function."""

    settings = Settings.from_environ()
    configure_logging(settings.log_level)
    records = event.get('Records', [])
    logger.info('Received %d records', len(records))
    return process_records(records, get_clients(), settings)
