"""Lambda functions, their execution roles, and the permissions each of AutoAlarm's functions needs."""

import json
import pulumi
import pulumi_aws as aws

from autoalarm.constants import ASSUME_ROLE_POLICY, IAM_POLICY_DOCUMENT, SQS_BATCH_SIZE
from autoalarm.infra import AutoAlarmComponentResource, AutoAlarmProject
from copy import deepcopy

#: Managed policy granting a function permission to write its logs
LAMBDA_BASIC_EXECUTION_POLICY_ARN = 'arn:aws:iam::aws:policy/service-role/AWSLambdaBasicExecutionRole'
LAMBDA_RUNTIME = 'python3.12'


def policy_document(statements: list[dict]) -> dict:
    """Builds an IAM policy document from a list of statements."""

    document = deepcopy(IAM_POLICY_DOCUMENT)
    document['Statement'] = statements
    return document


def function_policy_document(statements: list[dict], queue_arns: list[str]) -> dict:
    """Combines a function's own statements with permission to consume its source queues, if it has any."""

    statements = list(statements)
    if queue_arns:
        statements.append(queue_consumer_statement(list(queue_arns)))
    return policy_document(statements)


def queue_consumer_statement(queue_arns: list[str]) -> dict:
    """Allows a function to consume the given queues through an event source mapping."""

    return {
        'Sid': 'ConsumeQueues',
        'Effect': 'Allow',
        'Action': ['sqs:ReceiveMessage', 'sqs:DeleteMessage', 'sqs:GetQueueAttributes', 'sqs:ChangeMessageVisibility'],
        'Resource': sorted(queue_arns),
    }


def autoalarm_policy_statements(prometheus_workspace_arn: str = None) -> list[dict]:
    """Permissions the main function needs to read resources and manage their alarms.

    :param prometheus_workspace_arn: ARN of the Managed Prometheus workspace to manage rules in, if any. Defaults to
        None.
    :type prometheus_workspace_arn: str, optional

    :rtype: list[dict]
    """

    statements = [
        {
            'Sid': 'ManageAlarms',
            'Effect': 'Allow',
            'Action': [
                'cloudwatch:DeleteAlarms',
                'cloudwatch:DescribeAlarms',
                'cloudwatch:ListMetrics',
                'cloudwatch:PutAnomalyDetector',
                'cloudwatch:PutMetricAlarm',
            ],
            'Resource': '*',
        },
        {
            'Sid': 'ReadResources',
            'Effect': 'Allow',
            'Action': [
                'ec2:DescribeInstances',
                'ec2:DescribeTags',
                'elasticloadbalancing:DescribeTags',
                'elasticloadbalancing:DescribeTargetGroups',
                'es:ListTags',
                'sqs:GetQueueUrl',
                'sqs:ListQueueTags',
            ],
            'Resource': '*',
        },
    ]

    if prometheus_workspace_arn:
        rule_groups_arn = prometheus_workspace_arn.replace(':workspace/', ':rulegroupsnamespace/', 1)
        statements.append(
            {
                'Sid': 'ManagePrometheusRules',
                'Effect': 'Allow',
                'Action': [
                    'aps:CreateRuleGroupsNamespace',
                    'aps:DeleteRuleGroupsNamespace',
                    'aps:DescribeRuleGroupsNamespace',
                    'aps:DescribeWorkspace',
                    'aps:ListRuleGroupsNamespaces',
                    'aps:PutRuleGroupsNamespace',
                ],
                'Resource': [prometheus_workspace_arn, f'{rule_groups_arn}/*'],
            }
        )

    return statements


def realarm_producer_statements(queue_arn: str) -> list[dict]:
    """Permissions the ReAlarm producer needs to find stuck alarms and queue them."""

    return [
        {
            'Sid': 'FindAlarms',
            'Effect': 'Allow',
            'Action': ['cloudwatch:DescribeAlarms', 'cloudwatch:ListTagsForResource'],
            'Resource': '*',
        },
        {
            'Sid': 'QueueAlarms',
            'Effect': 'Allow',
            'Action': ['sqs:SendMessage'],
            'Resource': [queue_arn],
        },
    ]


def realarm_consumer_statements() -> list[dict]:
    """Permissions the ReAlarm consumer needs to reset alarms."""

    return [
        {
            'Sid': 'ResetAlarms',
            'Effect': 'Allow',
            'Action': ['cloudwatch:SetAlarmState'],
            'Resource': '*',
        },
    ]


class LambdaFunction(AutoAlarmComponentResource):
    """**Pulumi Type:** ``autoalarm:infra:LambdaFunction``

    Builds a Lambda function with its own IAM execution role, optionally fed by SQS queues. Event source mappings
    report partial batch failures, so only failed records are retried.

    Produces the following ``resources``:

        - *role* - `aws.iam.Role <https://www.pulumi.com/registry/packages/aws/api-docs/iam/role/>`_ the function
          executes as.
        - *logging_attachment* - `aws.iam.RolePolicyAttachment
          <https://www.pulumi.com/registry/packages/aws/api-docs/iam/rolepolicyattachment/>`_ allowing the function to
          write logs.
        - *policy* - `aws.iam.RolePolicy <https://www.pulumi.com/registry/packages/aws/api-docs/iam/rolepolicy/>`_
          with the function's own permissions.
        - *lambda* - `aws.lambda_.Function <https://www.pulumi.com/registry/packages/aws/api-docs/lambda/function/>`_.
        - *event_source_mappings* - List of `aws.lambda_.EventSourceMapping
          <https://www.pulumi.com/registry/packages/aws/api-docs/lambda/eventsourcemapping/>`_ s, one per queue.

    :param name: A string identifying this set of resources.
    :type name: str

    :param project: The AutoAlarmProject to add these resources to.
    :type project: :py:class:`autoalarm.infra.AutoAlarmProject`

    :param handler: The function's handler, such as ``autoalarm.handler.handler``.
    :type handler: str

    :param code_path: Path to a directory or zip file containing the function's code and dependencies.
    :type code_path: str

    :param policy_statements: IAM statements granting the function's permissions, not including those needed to
        consume ``source_queues``.
    :type policy_statements: pulumi.Input[list[dict]]

    :param source_queues: Queues which trigger the function. Defaults to [].
    :type source_queues: list[aws.sqs.Queue], optional

    :param environment: Environment variables to set on the function. Defaults to {}.
    :type environment: dict, optional

    :param batch_size: Most records to deliver to one invocation. Defaults to
        :py:data:`autoalarm.constants.SQS_BATCH_SIZE`.
    :type batch_size: int, optional

    :param exclude_from_project: When ``True``, these resources are not registered with the project directly. Set this
        when nesting them in another component. Defaults to ``False``.
    :type exclude_from_project: bool, optional

    :param opts: Additional pulumi.ResourceOptions to apply to these resources. Defaults to None.
    :type opts: pulumi.ResourceOptions, optional

    :param tags: Key/value pairs to merge with the default tags which get applied to all resources in this group.
        Defaults to {}.
    :type tags: dict, optional

    :param kwargs: Any other keyword arguments are passed to the ``aws.lambda_.Function`` constructor.
    """

    def __init__(
        self,
        name: str,
        project: AutoAlarmProject,
        handler: str,
        code_path: str,
        policy_statements: pulumi.Input[list[dict]],
        source_queues: list[aws.sqs.Queue] = [],
        environment: dict = {},
        batch_size: int = SQS_BATCH_SIZE,
        exclude_from_project: bool = False,
        opts: pulumi.ResourceOptions = None,
        tags: dict = {},
        **kwargs,
    ):
        super().__init__(
            'autoalarm:infra:LambdaFunction',
            name=name,
            project=project,
            exclude_from_project=exclude_from_project,
            opts=opts,
            tags=tags,
        )

        # Update the assume role policy's principal in a copy of our template
        arp = deepcopy(ASSUME_ROLE_POLICY)
        arp['Statement'][0]['Principal']['Service'] = 'lambda.amazonaws.com'

        role = aws.iam.Role(
            f'{name}-lambda-role',
            assume_role_policy=json.dumps(arp),
            description=f'Execution role for lambda {name}',
            name=name,
            tags=self.tags,
            opts=pulumi.ResourceOptions(parent=self),
        )

        logging_attachment = aws.iam.RolePolicyAttachment(
            f'{name}-lambda-logging',
            role=role.name,
            policy_arn=LAMBDA_BASIC_EXECUTION_POLICY_ARN,
            opts=pulumi.ResourceOptions(parent=self, depends_on=[role]),
        )

        queue_arns = [queue.arn for queue in source_queues]
        policy_doc = pulumi.Output.all(policy_statements, *queue_arns).apply(
            lambda outputs: json.dumps(function_policy_document(outputs[0], outputs[1:]))
        )

        policy = aws.iam.RolePolicy(
            f'{name}-lambda-policy',
            name=name,
            role=role.id,
            policy=policy_doc,
            opts=pulumi.ResourceOptions(parent=self, depends_on=[role]),
        )

        # "lambda" is a Python reserved word, hence the underscored module name
        lambda_func = aws.lambda_.Function(
            f'{name}-lambda-function',
            name=name,
            role=role.arn,
            runtime=LAMBDA_RUNTIME,
            handler=handler,
            code=pulumi.FileArchive(code_path),
            environment={'variables': environment},
            tags=self.tags,
            opts=pulumi.ResourceOptions(parent=self, depends_on=[logging_attachment, policy]),
            **kwargs,
        )

        event_source_mappings = [
            aws.lambda_.EventSourceMapping(
                f'{name}-source-{idx}',
                event_source_arn=queue.arn,
                function_name=lambda_func.arn,
                batch_size=batch_size,
                function_response_types=['ReportBatchItemFailures'],
                opts=pulumi.ResourceOptions(parent=self, depends_on=[policy]),
            )
            for idx, queue in enumerate(source_queues)
        ]

        self.finish(
            resources={
                'role': role,
                'logging_attachment': logging_attachment,
                'policy': policy,
                'lambda': lambda_func,
                'event_source_mappings': event_source_mappings,
            }
        )


def invoke_policy_document(function_arn: str) -> dict:
    """Allows a principal to invoke a single Lambda function."""

    return policy_document(
        [
            {
                'Sid': 'AllowLambdaInvocation',
                'Effect': 'Allow',
                'Action': ['lambda:InvokeFunction'],
                'Resource': [function_arn],
            }
        ]
    )


class LambdaSchedule(AutoAlarmComponentResource):
    """**Pulumi Type:** ``autoalarm:infra:LambdaSchedule``

    Invokes a Lambda function on a recurring basis through EventBridge Scheduler.

    Produces the following ``resources``:

        - *role* - `aws.iam.Role <https://www.pulumi.com/registry/packages/aws/api-docs/iam/role/>`_ the scheduler
          assumes.
        - *policy* - `aws.iam.RolePolicy <https://www.pulumi.com/registry/packages/aws/api-docs/iam/rolepolicy/>`_
          allowing the scheduler to invoke the function.
        - *schedule* - `aws.scheduler.Schedule
          <https://www.pulumi.com/registry/packages/aws/api-docs/scheduler/schedule/>`_ invoking the function.

    :param name: A string identifying this set of resources.
    :type name: str

    :param project: The AutoAlarmProject to add these resources to.
    :type project: :py:class:`autoalarm.infra.AutoAlarmProject`

    :param function: The function to invoke.
    :type function: aws.lambda_.Function

    :param rate: How often to invoke the function, in the form of a scheduler rate such as "120 minutes".
    :type rate: str

    :param exclude_from_project: When ``True``, these resources are not registered with the project directly. Defaults
        to ``False``.
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
        function: aws.lambda_.Function,
        rate: str,
        exclude_from_project: bool = False,
        opts: pulumi.ResourceOptions = None,
        tags: dict = {},
    ):
        super().__init__(
            'autoalarm:infra:LambdaSchedule',
            name=name,
            project=project,
            exclude_from_project=exclude_from_project,
            opts=opts,
            tags=tags,
        )

        # The scheduler needs its own role to invoke the function
        arp = deepcopy(ASSUME_ROLE_POLICY)
        arp['Statement'][0]['Principal']['Service'] = 'scheduler.amazonaws.com'

        role = aws.iam.Role(
            f'{name}-scheduler-role',
            assume_role_policy=json.dumps(arp),
            description=f'Role assumed by the scheduler for {name}',
            name=f'{name}-scheduler',
            tags=self.tags,
            opts=pulumi.ResourceOptions(parent=self),
        )

        policy = aws.iam.RolePolicy(
            f'{name}-scheduler-policy',
            name=f'{name}-scheduler',
            role=role.id,
            policy=function.arn.apply(lambda function_arn: json.dumps(invoke_policy_document(function_arn))),
            opts=pulumi.ResourceOptions(parent=self, depends_on=[role]),
        )

        schedule = aws.scheduler.Schedule(
            f'{name}-schedule',
            name=name,
            description=f'Schedule for lambda {name}',
            flexible_time_window={'mode': 'OFF'},
            schedule_expression=f'rate({rate})',
            target={
                'arn': function.arn,
                'role_arn': role.arn,
            },
            opts=pulumi.ResourceOptions(parent=self, depends_on=[policy]),
        )

        self.finish(
            resources={
                'role': role,
                'policy': policy,
                'schedule': schedule,
            }
        )
