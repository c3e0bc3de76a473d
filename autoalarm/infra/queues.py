"""FIFO queues which carry events to AutoAlarm's functions."""

import json
import pulumi
import pulumi_aws as aws

from autoalarm.infra import AutoAlarmComponentResource, AutoAlarmProject

#: Times a message is received before it moves to the dead-letter queue
MAX_RECEIVE_COUNT = 3
#: Seconds a received message stays hidden; must be at least the consuming function's timeout
VISIBILITY_TIMEOUT = 900
#: Seconds messages are kept in a dead-letter queue
DLQ_MESSAGE_RETENTION = 1209600


def fifo_queue_name(name: str) -> str:
    """FIFO queue names must end in ``.fifo``."""

    return name if name.endswith('.fifo') else f'{name}.fifo'


def redrive_policy(dlq_arn: str, max_receive_count: int = MAX_RECEIVE_COUNT) -> str:
    """Returns the JSON redrive policy pointing a queue at its dead-letter queue."""

    return json.dumps({'deadLetterTargetArn': dlq_arn, 'maxReceiveCount': max_receive_count})


class FifoQueueWithDlq(AutoAlarmComponentResource):
    """**Pulumi Type:** ``autoalarm:infra:FifoQueueWithDlq``

    Builds a FIFO queue with content-based deduplication and a FIFO dead-letter queue, plus an alarm which fires when
    anything lands in the dead-letter queue.

    Produces the following ``resources``:

        - *queue* - `aws.sqs.Queue <https://www.pulumi.com/registry/packages/aws/api-docs/sqs/queue/>`_ receiving
          events.
        - *dlq* - `aws.sqs.Queue <https://www.pulumi.com/registry/packages/aws/api-docs/sqs/queue/>`_ holding messages
          which failed too many times.
        - *dlq_alarm* - `aws.cloudwatch.MetricAlarm
          <https://www.pulumi.com/registry/packages/aws/api-docs/cloudwatch/metricalarm/>`_ on the depth of the
          dead-letter queue.

    :param name: A string identifying this set of resources. Also the base of the queue names.
    :type name: str

    :param project: The AutoAlarmProject to add these resources to.
    :type project: :py:class:`autoalarm.infra.AutoAlarmProject`

    :param alarm_actions: ARNs to notify when the dead-letter queue alarm fires. Defaults to [].
    :type alarm_actions: list[str], optional

    :param visibility_timeout: Visibility timeout of the main queue, in seconds. Defaults to
        :py:data:`VISIBILITY_TIMEOUT`.
    :type visibility_timeout: int, optional

    :param exclude_from_project: When ``True``, these resources are not registered with the project directly. Set this
        when nesting them in another component. Defaults to ``False``.
    :type exclude_from_project: bool, optional

    :param opts: Additional pulumi.ResourceOptions to apply to these resources. Defaults to None.
    :type opts: pulumi.ResourceOptions, optional

    :param tags: Key/value pairs to merge with the default tags which get applied to all resources in this group.
        Defaults to {}.
    :type tags: dict, optional
    """

    def __init__(
        self,
        name: str,
        project: AutoAlarmProject,
        alarm_actions: list[str] = [],
        visibility_timeout: int = VISIBILITY_TIMEOUT,
        exclude_from_project: bool = False,
        opts: pulumi.ResourceOptions = None,
        tags: dict = {},
        **kwargs,
    ):
        super().__init__(
            'autoalarm:infra:FifoQueueWithDlq',
            name=name,
            project=project,
            exclude_from_project=exclude_from_project,
            opts=opts,
            tags=tags,
        )

        dlq = aws.sqs.Queue(
            f'{name}-dlq',
            name=fifo_queue_name(f'{name}-failed-events'),
            fifo_queue=True,
            content_based_deduplication=True,
            message_retention_seconds=DLQ_MESSAGE_RETENTION,
            tags=self.tags,
            opts=pulumi.ResourceOptions(parent=self),
        )

        queue = aws.sqs.Queue(
            f'{name}-queue',
            name=fifo_queue_name(name),
            fifo_queue=True,
            content_based_deduplication=True,
            visibility_timeout_seconds=visibility_timeout,
            redrive_policy=dlq.arn.apply(redrive_policy),
            tags=self.tags,
            opts=pulumi.ResourceOptions(parent=self, depends_on=[dlq]),
            **kwargs,
        )

        dlq_alarm = aws.cloudwatch.MetricAlarm(
            f'{name}-dlq-depth',
            name=f'{name}-dlq-depth',
            alarm_description=f'Messages have failed processing and landed in the dead-letter queue of {name}',
            alarm_actions=alarm_actions,
            comparison_operator='GreaterThanThreshold',
            dimensions={'QueueName': dlq.name},
            evaluation_periods=1,
            metric_name='ApproximateNumberOfMessagesVisible',
            namespace='AWS/SQS',
            period=60,
            statistic='Maximum',
            threshold=0,
            treat_missing_data='notBreaching',
            tags=self.tags,
            opts=pulumi.ResourceOptions(parent=self, depends_on=[dlq]),
        )

        self.finish(
            resources={
                'queue': queue,
                'dlq': dlq,
                'dlq_alarm': dlq_alarm,
            }
        )
