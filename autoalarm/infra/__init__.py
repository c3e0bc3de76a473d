"""Pulumi components which deploy AutoAlarm: its queues, the EventBridge rules feeding them, and its Lambda functions.
Nothing in the Lambda handlers imports this package, so the function bundles never need Pulumi.
"""

import pulumi
import yaml

from autoalarm import AwsClients, env_var_is_true
from autoalarm.constants import DEFAULT_PROTECTED_STACKS
from functools import cached_property


class AutoAlarmProject:
    """Describes the Pulumi stack AutoAlarm is being deployed into and the AWS account behind it.

    :param protected_stacks: Stacks whose resources are protected from accidental replacement or deletion. Defaults to
        :py:data:`autoalarm.constants.DEFAULT_PROTECTED_STACKS`.
    :type protected_stacks: list[str], optional

    :param clients: Source of AWS clients. Defaults to one built for the current session's region.
    :type clients: :py:class:`autoalarm.AwsClients`, optional
    """

    def __init__(self, protected_stacks: list[str] = DEFAULT_PROTECTED_STACKS, clients: AwsClients = None):
        self.project: str = pulumi.get_project()  #: Pulumi project name
        self.stack: str = pulumi.get_stack()  #: Pulumi stack name
        self.name_prefix: str = f'{self.project}-{self.stack}'  #: Prefix shared by every resource name
        self.protected_stacks: list[str] = protected_stacks
        #: Resources registered by top-level components, keyed by component name
        self.resources: dict = {}
        #: Tags every taggable resource receives
        self.common_tags: dict = {
            'autoalarm:managed-by': 'pulumi',
            'pulumi_project': self.project,
            'pulumi_stack': self.stack,
        }

        self.clients = clients or AwsClients()
        self.aws_region: str = self.clients.region_name  #: Region the stack deploys into
        #: Account the deploying credentials belong to
        self.aws_account_id: str = self.clients.get('sts').get_caller_identity()['Account']

    @cached_property
    def config(self) -> dict:
        """The stack's settings, read once from ``config.{stack}.yaml`` in the Pulumi project directory. An empty file
        yields an empty dict."""

        with open(f'config.{self.stack}.yaml', 'r') as fh:
            return yaml.load(fh, Loader=yaml.SafeLoader) or {}


class AutoAlarmComponentResource(pulumi.ComponentResource):
    """Base for AutoAlarm's Pulumi components. Applies the project's tags and stack protection to everything built
    beneath it.

    :param pulumi_type: Pulumi type token of the component, such as ``autoalarm:infra:FifoQueueWithDlq``.
    :type pulumi_type: str

    :param name: Name of the component. Child resources derive their names from it.
    :type name: str

    :param project: Project the component deploys into.
    :type project: :py:class:`autoalarm.infra.AutoAlarmProject`

    :param exclude_from_project: Set this on components nested inside another component so only the outermost one is
        registered on the project. Defaults to False.
    :type exclude_from_project: bool, optional

    :param opts: Extra options merged over the component's defaults. Defaults to None.
    :type opts: pulumi.ResourceOptions, optional

    :param tags: Tags added to the project's common tags. Defaults to {}.
    :type tags: dict, optional
    """

    def __init__(
        self,
        pulumi_type: str,
        name: str,
        project: AutoAlarmProject,
        exclude_from_project: bool = False,
        opts: pulumi.ResourceOptions = None,
        tags: dict = {},
    ):
        self.name: str = name
        self.project: AutoAlarmProject = project
        self.exclude_from_project = exclude_from_project

        protect = self.protect_resources
        if protect:
            pulumi.info(f'{name} is protected; export AUTOALARM_DISABLE_PROTECTION=True to change it')

        super().__init__(t=pulumi_type, name=name, opts=pulumi.ResourceOptions(protect=protect).merge(opts))

        self.tags: dict = {**self.project.common_tags, **tags}  #: Tags for this component's resources
        self.resources: dict = {}  #: Child resources, set by :py:meth:`finish`

    def finish(self, resources: dict = {}):
        """Records the component's child resources and completes its registration. Subclasses call this last.

        :param resources: Child resources, keyed by a short role name such as ``queue`` or ``lambda``. Defaults to {}.
        :type resources: dict, optional
        """

        self.resources = resources
        self.register_outputs({})
        if not self.exclude_from_project:
            self.project.resources[self.name] = resources

    @property
    def protect_resources(self) -> bool:
        """True when the stack is protected and ``AUTOALARM_DISABLE_PROTECTION`` is not set to a true value."""

        return self.project.stack in self.project.protected_stacks and not env_var_is_true(
            'AUTOALARM_DISABLE_PROTECTION'
        )
