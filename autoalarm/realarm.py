"""ReAlarm sends fresh notifications for problems nobody has fixed. A scheduled producer finds every alarm stuck in the
``ALARM`` state and queues it up; a consumer resets each queued alarm to ``OK``. The next time CloudWatch evaluates the
alarm, it goes back into ``ALARM`` and notifies again.

Alarms driving auto scaling are never reset, since that would trigger scaling actions. An alarm can opt out by carrying
the tag ``autoalarm:re-alarm-enabled=false``.
"""

import hashlib
import json
import logging
import time

from autoalarm import AwsClients, configure_logging
from autoalarm.constants import REALARM_ENABLED_TAG
from autoalarm.retry import AdaptiveBatchSender
from autoalarm.settings import Settings
from botocore.exceptions import ClientError
from collections.abc import Callable

logger = logging.getLogger(__name__)

#: Every ReAlarm message shares one FIFO message group
REALARM_MESSAGE_GROUP = 'ReAlarm'
REALARM_STATE_REASON = 'Resetting state from ReAlarm'

_clients: AwsClients = None


def get_clients() -> AwsClients:
    """Returns the process-wide :py:class:`autoalarm.AwsClients`, building it on first use."""

    global _clients
    if _clients is None:
        _clients = AwsClients()
    return _clients


def has_autoscaling_action(alarm: dict) -> bool:
    """Determines whether any of an alarm's actions belongs to auto scaling."""

    return any('autoscaling' in action for action in alarm.get('AlarmActions', []))


def is_realarm_disabled(cloudwatch, alarm_arn: str) -> bool:
    """Determines whether an alarm has opted out of ReAlarm through its tags."""

    tags = cloudwatch.list_tags_for_resource(ResourceARN=alarm_arn).get('Tags', [])
    for tag in tags:
        if tag.get('Key') == REALARM_ENABLED_TAG:
            return tag.get('Value', '').strip().lower() == 'false'
    return False


def find_alarms_to_reset(cloudwatch) -> list[dict]:
    """Lists every metric alarm in the ``ALARM`` state which ReAlarm may reset.

    :param cloudwatch: A ``boto3`` CloudWatch client.

    :return: The alarms, as described by ``describe_alarms``.
    :rtype: list[dict]
    """

    alarms = []
    paginator = cloudwatch.get_paginator('describe_alarms')
    for page in paginator.paginate(StateValue='ALARM', AlarmTypes=['MetricAlarm']):
        for alarm in page.get('MetricAlarms', []):
            name = alarm['AlarmName']
            if has_autoscaling_action(alarm):
                logger.info('Skipping %s, which has an auto scaling action', name)
                continue
            if is_realarm_disabled(cloudwatch, alarm['AlarmArn']):
                logger.info('Skipping %s, which has ReAlarm disabled', name)
                continue
            alarms.append(alarm)

    logger.info('Found %d alarms to reset', len(alarms))
    return alarms


def build_message_entries(alarms: list[dict]) -> list[dict]:
    """Builds one ``send_message_batch`` entry per alarm. Deduplication IDs combine the alarm's name and the time it
    last changed state, so an alarm is queued at most once per trip into ``ALARM``."""

    entries = []
    for idx, alarm in enumerate(alarms):
        name = alarm['AlarmName']
        dedup_source = f'{name}:{alarm.get("StateUpdatedTimestamp", "")}'
        entries.append(
            {
                'Id': str(idx),
                'MessageBody': json.dumps({'AlarmName': name, 'AlarmArn': alarm.get('AlarmArn')}),
                'MessageGroupId': REALARM_MESSAGE_GROUP,
                'MessageDeduplicationId': hashlib.sha256(dedup_source.encode()).hexdigest(),
            }
        )
    return entries


def produce(clients: AwsClients, queue_url: str, sleep: Callable[[float], None] = time.sleep) -> dict:
    """Queues up every alarm which should be reset.

    :param clients: Source of AWS clients.
    :type clients: AwsClients

    :param queue_url: URL of the ReAlarm FIFO queue.
    :type queue_url: str

    :param sleep: Function to wait with between batches. Defaults to ``time.sleep``.
    :type sleep: Callable[[float], None], optional

    :return: Counts of alarms queued and alarms which could not be queued.
    :rtype: dict
    """

    alarms = find_alarms_to_reset(clients.get('cloudwatch'))
    sqs = clients.get('sqs')
    sender = AdaptiveBatchSender(lambda batch: sqs.send_message_batch(QueueUrl=queue_url, Entries=batch), sleep=sleep)
    failed = sender.send_all(build_message_entries(alarms))
    return {'queued': len(alarms) - len(failed), 'failed': len(failed)}


def reset_alarm(cloudwatch, alarm_name: str):
    """Sets an alarm's state to ``OK``."""

    cloudwatch.set_alarm_state(AlarmName=alarm_name, StateValue='OK', StateReason=REALARM_STATE_REASON)
    logger.info('Reset alarm %s', alarm_name)


def consume(records: list[dict], clients: AwsClients) -> dict:
    """Resets the alarm named in each record.

    :param records: The ``Records`` of an SQS event.
    :type records: list[dict]

    :param clients: Source of AWS clients.
    :type clients: AwsClients

    :return: A partial batch response naming the records which failed.
    :rtype: dict
    """

    cloudwatch = clients.get('cloudwatch')
    failures = []
    for record in records:
        message_id = record.get('messageId')
        try:
            alarm_name = json.loads(record.get('body', ''))['AlarmName']
            reset_alarm(cloudwatch, alarm_name)
        except (ClientError, KeyError, TypeError, json.JSONDecodeError):
            logger.exception('Failed to reset the alarm in message %s', message_id)
            failures.append({'itemIdentifier': message_id})
    return {'batchItemFailures': failures}


def producer_handler(event: dict, context) -> dict:
    """Lambda entry point for the ReAlarm producer, run on a schedule."""

    settings = Settings.from_environ()
    configure_logging(settings.log_level)
    if not settings.realarm_queue_url:
        raise ValueError('REALARM_QUEUE_URL is not set')
    return produce(get_clients(), settings.realarm_queue_url)


def consumer_handler(event: dict, context) -> dict:
    """Lambda entry point for the ReAlarm consumer, fed by the ReAlarm queue."""

    settings = Settings.from_environ()
    configure_logging(settings.log_level)
    return consume(event.get('Records', []), get_clients())
