"""EventBridge rules which route each service's tag changes and lifecycle events to that service's queue. The patterns
are derived from the same tables :py:func:`autoalarm.events.parse_event` uses, so every event a rule matches is one
the main function can parse."""

import json
import pulumi
import pulumi_aws as aws

from autoalarm.events import (
    CLOUDTRAIL_DETAIL_TYPE,
    CLOUDTRAIL_EVENTS,
    STATE_CHANGE_DETAIL_TYPE,
    TAG_CHANGE_DETAIL_TYPE,
    TAG_EVENT_SERVICES,
)
from autoalarm.infra import AutoAlarmComponentResource, AutoAlarmProject
from autoalarm.infra.functions import policy_document
from autoalarm.metrics import changed_tag_keys

#: EC2 instance states which trigger reconciliation or cleanup
EC2_STATES = ['running', 'stopped', 'terminated']

#: AWS service behind each service key's CloudTrail events
CLOUDTRAIL_SOURCES = {
    'alb': 'elasticloadbalancing',
    'opensearch': 'es',
    'sqs': 'sqs',
    'targetgroup': 'elasticloadbalancing',
}


def service_event_patterns(service: str) -> dict[str, dict]:
    """Builds the EventBridge event patterns for a service.

    :param service: Service key, such as ``ec2``.
    :type service: str

    :return: Event patterns keyed by a short rule name.
    :rtype: dict[str, dict]
    """

    patterns = {}

    for (aws_service, resource_type), key in TAG_EVENT_SERVICES.items():
        if key == service:
            patterns['tag'] = {
                'source': ['aws.tag'],
                'detail-type': [TAG_CHANGE_DETAIL_TYPE],
                'detail': {
                    'service': [aws_service],
                    'resource-type': [resource_type],
                    'changed-tag-keys': changed_tag_keys(service),
                },
            }

    if service == 'ec2':
        patterns['state'] = {
            'source': ['aws.ec2'],
            'detail-type': [STATE_CHANGE_DETAIL_TYPE],
            'detail': {'state': EC2_STATES},
        }

    event_names = sorted(name for name, (key, _) in CLOUDTRAIL_EVENTS.items() if key == service)
    if event_names:
        source = CLOUDTRAIL_SOURCES[service]
        patterns['api'] = {
            'source': [f'aws.{source}'],
            'detail-type': [CLOUDTRAIL_DETAIL_TYPE],
            'detail': {'eventSource': [f'{source}.amazonaws.com'], 'eventName': event_names},
        }

    return patterns


def queue_policy_document(queue_arn: str, rule_arns: list[str]) -> dict:
    """Allows the given EventBridge rules to send messages to a queue."""

    return policy_document(
        [
            {
                'Sid': 'AllowEventBridgeRules',
                'Effect': 'Allow',
                'Principal': {'Service': 'events.amazonaws.com'},
                'Action': 'sqs:SendMessage',
                'Resource': queue_arn,
                'Condition': {'ArnEquals': {'aws:SourceArn': sorted(rule_arns)}},
            }
        ]
    )


class ServiceEventRules(AutoAlarmComponentResource):
    """**Pulumi Type:** ``autoalarm:infra:ServiceEventRules``

    Builds the EventBridge rules for one service, each targeting the service's FIFO queue with a message group named
    for the service, and the queue policy letting those rules deliver.

    Produces the following ``resources``:

        - *rules* - Dict of `aws.cloudwatch.EventRule
          <https://www.pulumi.com/registry/packages/aws/api-docs/cloudwatch/eventrule/>`_ s keyed by the names used in
          :py:func:`service_event_patterns`.
        - *targets* - Dict of `aws.cloudwatch.EventTarget
          <https://www.pulumi.com/registry/packages/aws/api-docs/cloudwatch/eventtarget/>`_ s with the same keys.
        - *queue_policy* - `aws.sqs.QueuePolicy
          <https://www.pulumi.com/registry/packages/aws/api-docs/sqs/queuepolicy/>`_ on the service's queue.

    :param name: A string identifying this set of resources.
    :type name: str

    :param project: The AutoAlarmProject to add these resources to.
    :type project: :py:class:`autoalarm.infra.AutoAlarmProject`

    :param service: Service key, such as ``ec2``.
    :type service: str

    :param queue: The FIFO queue events should be delivered to.
    :type queue: aws.sqs.Queue

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
        service: str,
        queue: aws.sqs.Queue,
        exclude_from_project: bool = False,
        opts: pulumi.ResourceOptions = None,
        tags: dict = {},
    ):
        super().__init__(
            'autoalarm:infra:ServiceEventRules',
            name=name,
            project=project,
            exclude_from_project=exclude_from_project,
            opts=opts,
            tags=tags,
        )

        rules = {}
        targets = {}
        for rule_name, pattern in service_event_patterns(service).items():
            rules[rule_name] = aws.cloudwatch.EventRule(
                f'{name}-{rule_name}',
                name=f'{name}-{rule_name}',
                description=f'Routes {service} {rule_name} events to AutoAlarm',
                event_pattern=json.dumps(pattern),
                tags=self.tags,
                opts=pulumi.ResourceOptions(parent=self),
            )
            targets[rule_name] = aws.cloudwatch.EventTarget(
                f'{name}-{rule_name}-target',
                rule=rules[rule_name].name,
                arn=queue.arn,
                sqs_target={'message_group_id': service},
                opts=pulumi.ResourceOptions(parent=self, depends_on=[rules[rule_name]]),
            )

        rule_arns = [rule.arn for rule in rules.values()]
        queue_policy = aws.sqs.QueuePolicy(
            f'{name}-queue-policy',
            queue_url=queue.url,
            policy=pulumi.Output.all(queue.arn, *rule_arns).apply(
                lambda arns: json.dumps(queue_policy_document(arns[0], list(arns[1:])))
            ),
            opts=pulumi.ResourceOptions(parent=self),
        )

        pulumi.info(f'Routing {len(rules)} kinds of {service} event to AutoAlarm')

        self.finish(
            resources={
                'rules': rules,
                'targets': targets,
                'queue_policy': queue_policy,
            }
        )
