"""The whole AutoAlarm deployment as a single component. A Pulumi program needs little more than this:

.. code-block:: python

    import autoalarm.infra
    import autoalarm.infra.stack

    project = autoalarm.infra.AutoAlarmProject()
    autoalarm.infra.stack.AutoAlarmStack(f'{project.name_prefix}', project=project, **project.config)
"""

import pulumi
import pulumi_aws as aws

from autoalarm.constants import SERVICE_QUEUES
from autoalarm.infra import AutoAlarmComponentResource, AutoAlarmProject
from autoalarm.infra.events import ServiceEventRules
from autoalarm.infra.functions import (
    LambdaFunction,
    LambdaSchedule,
    autoalarm_policy_statements,
    realarm_consumer_statements,
    realarm_producer_statements,
)
from autoalarm.infra.queues import FifoQueueWithDlq

#: How often the ReAlarm producer runs
REALARM_RATE = '120 minutes'
MAIN_FUNCTION_TIMEOUT = 600
MAIN_FUNCTION_MEMORY = 512
REALARM_FUNCTION_TIMEOUT = 300


def workspace_arn(region: str, account_id: str, workspace_id: str) -> str:
    """Returns the ARN of a Managed Prometheus workspace."""

    return f'arn:aws:aps:{region}:{account_id}:workspace/{workspace_id}'


class AutoAlarmStack(AutoAlarmComponentResource):
    """**Pulumi Type:** ``autoalarm:infra:AutoAlarmStack``

    Builds everything AutoAlarm needs to run.

    Produces the following ``resources``:

        - *queues* - Dict of :py:class:`autoalarm.infra.queues.FifoQueueWithDlq` s keyed by service.
        - *event_rules* - Dict of :py:class:`autoalarm.infra.events.ServiceEventRules` keyed by service.
        - *main_function* - :py:class:`autoalarm.infra.functions.LambdaFunction` reconciling alarms.
        - *realarm_queue* - :py:class:`autoalarm.infra.queues.FifoQueueWithDlq` carrying alarms to reset.
        - *realarm_producer* - :py:class:`autoalarm.infra.functions.LambdaFunction` finding stuck alarms. Only present
          when ReAlarm is enabled.
        - *realarm_schedule* - :py:class:`autoalarm.infra.functions.LambdaSchedule` running the producer. Only present
          when ReAlarm is enabled.
        - *realarm_consumer* - :py:class:`autoalarm.infra.functions.LambdaFunction` resetting alarms. Only present
          when ReAlarm is enabled.

    :param name: A string identifying this set of resources.
    :type name: str

    :param project: The AutoAlarmProject to add these resources to.
    :type project: :py:class:`autoalarm.infra.AutoAlarmProject`

    :param code_path: Path to the zip file or directory holding the ``autoalarm`` package and its runtime dependencies.
    :type code_path: str

    :param log_level: Level the functions log at. Defaults to "INFO".
    :type log_level: str, optional

    :param prometheus_workspace_id: ID of a Managed Prometheus workspace to manage rules in. When empty, every alarm
        is a CloudWatch alarm. Defaults to ''.
    :type prometheus_workspace_id: str, optional

    :param alarm_actions: ARNs to notify when events fail processing. Defaults to [].
    :type alarm_actions: list[str], optional

    :param realarm: Settings for ReAlarm. ``enabled`` turns it on or off (defaults to ``True``) and ``rate`` sets how
        often it runs (defaults to :py:data:`REALARM_RATE`). Defaults to {}.
    :type realarm: dict, optional

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
        code_path: str,
        log_level: str = 'INFO',
        prometheus_workspace_id: str = '',
        alarm_actions: list[str] = [],
        realarm: dict = {},
        opts: pulumi.ResourceOptions = None,
        tags: dict = {},
    ):
        super().__init__('autoalarm:infra:AutoAlarmStack', name=name, project=project, opts=opts, tags=tags)

        queues = {
            service: FifoQueueWithDlq(
                f'{name}-{queue_name}',
                project=project,
                alarm_actions=alarm_actions,
                exclude_from_project=True,
                opts=pulumi.ResourceOptions(parent=self),
                tags=self.tags,
            )
            for service, queue_name in SERVICE_QUEUES.items()
        }

        event_rules = {
            service: ServiceEventRules(
                f'{name}-{service}-events',
                project=project,
                service=service,
                queue=queues[service].resources['queue'],
                exclude_from_project=True,
                opts=pulumi.ResourceOptions(parent=self, depends_on=[queues[service]]),
                tags=self.tags,
            )
            for service in SERVICE_QUEUES
        }

        if prometheus_workspace_id:
            pulumi.info(f'AutoAlarm will manage Prometheus rules in workspace {prometheus_workspace_id}')
            statements = autoalarm_policy_statements(
                workspace_arn(project.aws_region, project.aws_account_id, prometheus_workspace_id)
            )
        else:
            statements = autoalarm_policy_statements()

        main_function = LambdaFunction(
            f'{name}-main',
            project=project,
            handler='autoalarm.handler.handler',
            code_path=code_path,
            policy_statements=statements,
            source_queues=[queue.resources['queue'] for queue in queues.values()],
            environment={'LOG_LEVEL': log_level, 'PROMETHEUS_WORKSPACE_ID': prometheus_workspace_id},
            exclude_from_project=True,
            opts=pulumi.ResourceOptions(parent=self),
            tags=self.tags,
            timeout=MAIN_FUNCTION_TIMEOUT,
            memory_size=MAIN_FUNCTION_MEMORY,
        )

        resources = {
            'queues': queues,
            'event_rules': event_rules,
            'main_function': main_function,
        }

        if realarm.get('enabled', True):
            resources.update(
                self.__realarm(name, project, code_path, log_level, alarm_actions, realarm.get('rate', REALARM_RATE))
            )
        else:
            pulumi.warn('ReAlarm is disabled; alarms stuck in ALARM will not notify again')

        self.finish(resources=resources)

    def __realarm(
        self,
        name: str,
        project: AutoAlarmProject,
        code_path: str,
        log_level: str,
        alarm_actions: list[str],
        rate: str,
    ) -> dict:
        realarm_queue = FifoQueueWithDlq(
            f'{name}-ReAlarm',
            project=project,
            alarm_actions=alarm_actions,
            exclude_from_project=True,
            opts=pulumi.ResourceOptions(parent=self),
            tags=self.tags,
        )
        queue: aws.sqs.Queue = realarm_queue.resources['queue']

        producer = LambdaFunction(
            f'{name}-realarm-producer',
            project=project,
            handler='autoalarm.realarm.producer_handler',
            code_path=code_path,
            policy_statements=queue.arn.apply(realarm_producer_statements),
            environment={'LOG_LEVEL': log_level, 'REALARM_QUEUE_URL': queue.url},
            exclude_from_project=True,
            opts=pulumi.ResourceOptions(parent=self, depends_on=[realarm_queue]),
            tags=self.tags,
            timeout=REALARM_FUNCTION_TIMEOUT,
        )

        schedule = LambdaSchedule(
            f'{name}-realarm',
            project=project,
            function=producer.resources['lambda'],
            rate=rate,
            exclude_from_project=True,
            opts=pulumi.ResourceOptions(parent=self, depends_on=[producer]),
            tags=self.tags,
        )

        consumer = LambdaFunction(
            f'{name}-realarm-consumer',
            project=project,
            handler='autoalarm.realarm.consumer_handler',
            code_path=code_path,
            policy_statements=realarm_consumer_statements(),
            source_queues=[queue],
            environment={'LOG_LEVEL': log_level},
            exclude_from_project=True,
            opts=pulumi.ResourceOptions(parent=self, depends_on=[realarm_queue]),
            tags=self.tags,
            timeout=REALARM_FUNCTION_TIMEOUT,
        )

        return {
            'realarm_queue': realarm_queue,
            'realarm_producer': producer,
            'realarm_schedule': schedule,
            'realarm_consumer': consumer,
        }
