"""Reconciles alerting rules in an Amazon Managed Service for Prometheus workspace.

Each service gets one rule groups namespace named ``AutoAlarm-{SERVICE}``, holding one rule group named ``AutoAlarm``.
The namespace is stored by AWS as a single YAML document, so every change reads the whole document, modifies it, and
writes the whole document back::

    groups:
      - name: AutoAlarm
        rules:
          - alert: AutoAlarm-EC2-i-0123456789abcdef0-cpu-Critical
            expr: ...
            for: 5m
            labels:
              severity: critical
            annotations:
              summary: ...
              description: ...

Nothing here locks the document. Callers must make sure only one reconciliation runs per service at a time.
"""

import logging
import math
import time
import yaml

from autoalarm import AlarmVariant, MetricAlarmConfig, ResourceIdentity
from autoalarm.constants import ALARM_NAME_PREFIX, PROMETHEUS_RULE_GROUP_NAME
from autoalarm.exceptions import (
    NamespaceRecreateError,
    PrometheusFatalError,
    PrometheusRuleLimitError,
    PrometheusWorkspaceError,
)
from autoalarm.identity import alarm_key, build_alarm_name, is_opted_out, tag_name, wanted_classifications
from autoalarm.options import normalize_options, parse_metric_alarm_options
from autoalarm.retry import with_linear_backoff
from autoalarm.settings import Settings
from autoalarm.statistics import format_number
from botocore.exceptions import ClientError
from collections.abc import Callable
from dataclasses import dataclass, field
from tenacity import Retrying, before_sleep_log, retry_if_exception_type, stop_after_attempt, wait_fixed

logger = logging.getLogger(__name__)

#: A resource to build rules for, along with its tags and its service's metric configs
type PrometheusResource = tuple[ResourceIdentity, dict[str, str], list[MetricAlarmConfig]]

#: PromQL comparison for each CloudWatch comparison operator that has one
PROMQL_OPERATORS = {
    'GreaterThanOrEqualToThreshold': '>=',
    'GreaterThanThreshold': '>',
    'LessThanThreshold': '<',
    'LessThanOrEqualToThreshold': '<=',
}


@dataclass
class PrometheusRule:
    """One alerting rule in a namespace's rule group."""

    alert: str
    expr: str
    for_: str
    severity: str
    annotations: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        """Returns the rule in the shape it takes in a namespace document."""

        return {
            'alert': self.alert,
            'expr': self.expr,
            'for': self.for_,
            'labels': {'severity': self.severity},
            'annotations': dict(self.annotations),
        }


def namespace_name(service: str) -> str:
    """Returns the name of the namespace holding a service's rules, such as ``AutoAlarm-EC2``."""

    return f'{ALARM_NAME_PREFIX}-{service.upper()}'


def dump_namespace(document: dict) -> bytes:
    """Serializes a namespace document. The output depends only on the document, so writing the same rules twice
    writes the same bytes."""

    return yaml.safe_dump(document, sort_keys=False, default_flow_style=False).encode('utf-8')


def rule_count(document: dict) -> int:
    """Counts the rules in every group of a namespace document."""

    return sum(len(group.get('rules') or []) for group in document.get('groups') or [])


def _error_code(err: ClientError) -> str:
    return err.response.get('Error', {}).get('Code', '')


def build_prometheus_rules(
    identity: ResourceIdentity, tags: dict[str, str], configs: list[MetricAlarmConfig]
) -> list[PrometheusRule]:
    """Builds the alerting rules a resource's tags call for. Options are resolved exactly as they are for CloudWatch
    alarms, and rules share their names with the equivalent static CloudWatch alarms. Configs without a Prometheus
    expression are skipped.

    :param identity: The resource to build rules for. Its ``prometheus_instance`` (or, failing that, its identifier)
        fills the ``{instance}`` placeholder of each expression.
    :type identity: ResourceIdentity

    :param tags: The resource's tags.
    :type tags: dict[str, str]

    :param configs: The service's metric configs.
    :type configs: list[MetricAlarmConfig]

    :rtype: list[PrometheusRule]
    """

    instance = identity.prometheus_instance or identity.service_identifier
    rules = []
    for config in configs:
        if not config.prometheus_expression:
            continue
        tag_value = tags.get(tag_name(config))
        if is_opted_out(config, tag_value):
            continue

        options = normalize_options(parse_metric_alarm_options(tag_value, config.defaults))
        duration = f'{math.ceil(options.period * options.evaluation_periods / 60)}m'
        operator = PROMQL_OPERATORS.get(options.comparison_operator, '>')

        for classification in wanted_classifications(options):
            threshold = format_number(options.threshold(classification))
            severity = classification.value.lower()
            rules.append(
                PrometheusRule(
                    alert=build_alarm_name(
                        identity.service,
                        identity.service_identifier,
                        alarm_key(config),
                        classification,
                        AlarmVariant.STATIC,
                    ),
                    expr=config.prometheus_expression.format(instance=instance, threshold=threshold, operator=operator),
                    for_=duration,
                    severity=severity,
                    annotations={
                        'summary': f'{alarm_key(config)} {severity} on {identity.service_identifier}',
                        'description': (
                            f'{config.metric_name or alarm_key(config)} on {identity.service_identifier} has been '
                            f'{operator} {threshold} for {duration}'
                        ),
                    },
                )
            )
    return rules


class PrometheusRuleManager:
    """Manages the rule groups namespaces AutoAlarm owns in one workspace.

    :param client: A ``boto3`` ``amp`` client.

    :param workspace_id: ID of the Managed Prometheus workspace.
    :type workspace_id: str

    :param settings: Delays, attempt counts, and limits to observe. Defaults to :py:class:`autoalarm.settings.Settings`
        with its default values.
    :type settings: Settings, optional

    :param sleep: Function to wait with. Defaults to ``time.sleep``.
    :type sleep: Callable[[float], None], optional
    """

    def __init__(
        self, client, workspace_id: str, settings: Settings = None, sleep: Callable[[float], None] = time.sleep
    ):
        self.client = client
        self.workspace_id = workspace_id
        self.settings = settings or Settings()
        self.sleep = sleep

    def ensure_workspace_active(self):
        """Raises a :py:class:`autoalarm.exceptions.PrometheusWorkspaceError` unless the workspace exists and is
        active."""

        try:
            response = self.client.describe_workspace(workspaceId=self.workspace_id)
        except ClientError as err:
            if _error_code(err) == 'ResourceNotFoundException':
                raise PrometheusWorkspaceError(self.workspace_id) from err
            raise

        status = response['workspace']['status']['statusCode']
        if status != 'ACTIVE':
            raise PrometheusWorkspaceError(self.workspace_id, status)

    def list_namespaces(self) -> list[str]:
        """Lists the names of all namespaces in the workspace. Listing is attempted
        ``settings.namespace_list_attempts`` times, ``settings.namespace_list_retry_delay`` seconds apart.

        :rtype: list[str]
        """

        retrying = Retrying(
            stop=stop_after_attempt(self.settings.namespace_list_attempts),
            wait=wait_fixed(self.settings.namespace_list_retry_delay),
            retry=retry_if_exception_type(ClientError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            sleep=self.sleep,
            reraise=True,
        )
        return retrying(self._list_namespaces)

    def _list_namespaces(self) -> list[str]:
        paginator = self.client.get_paginator('list_rule_groups_namespaces')
        names = []
        for page in paginator.paginate(workspaceId=self.workspace_id):
            names.extend(namespace['name'] for namespace in page.get('ruleGroupsNamespaces', []))
        return names

    def describe_namespace(self, name: str) -> dict | None:
        """Reads a namespace document.

        :param name: Name of the namespace.
        :type name: str

        :return: The decoded document, or ``None`` if the namespace does not exist. A document which cannot be decoded
            is returned as having no groups.
        :rtype: dict
        """

        try:
            response = self.client.describe_rule_groups_namespace(workspaceId=self.workspace_id, name=name)
        except ClientError as err:
            if _error_code(err) == 'ResourceNotFoundException':
                return None
            raise

        data = response['ruleGroupsNamespace'].get('data') or b''
        try:
            document = yaml.safe_load(data)
        except yaml.YAMLError as err:
            logger.warning('Namespace %s holds YAML that cannot be decoded: %s', name, err)
            return {'groups': []}

        if not isinstance(document, dict):
            return {'groups': []}
        document['groups'] = document.get('groups') or []
        return document

    def total_rule_count(self) -> int:
        """Counts the rules across every namespace in the workspace.

        :rtype: int
        """

        total = 0
        for name in self.list_namespaces():
            document = self.describe_namespace(name)
            if document is not None:
                total += rule_count(document)
        return total

    def check_rule_limit(self):
        """Raises a :py:class:`autoalarm.exceptions.PrometheusRuleLimitError` if the workspace is at or over the rule
        limit."""

        total = self.total_rule_count()
        logger.debug('Workspace %s holds %d rules', self.workspace_id, total)
        if total >= self.settings.prometheus_rule_limit:
            raise PrometheusRuleLimitError(total, self.settings.prometheus_rule_limit)

    def create_namespace(self, name: str, rules: list[PrometheusRule]):
        """Creates a namespace holding ``rules``, then waits for it to propagate."""

        document = {'groups': [{'name': PROMETHEUS_RULE_GROUP_NAME, 'rules': [rule.to_dict() for rule in rules]}]}
        self.client.create_rule_groups_namespace(
            workspaceId=self.workspace_id, name=name, data=dump_namespace(document)
        )
        logger.info(
            'Created namespace %s with %d rules; waiting %ss for it to propagate',
            name,
            len(rules),
            self.settings.namespace_propagation_delay,
        )
        self.sleep(self.settings.namespace_propagation_delay)

    def put_namespace(self, name: str, document: dict):
        """Replaces the whole namespace document."""

        self.client.put_rule_groups_namespace(workspaceId=self.workspace_id, name=name, data=dump_namespace(document))
        logger.info('Updated namespace %s, which now holds %d rules', name, rule_count(document))

    def delete_namespace(self, name: str):
        """Deletes a namespace."""

        self.client.delete_rule_groups_namespace(workspaceId=self.workspace_id, name=name)
        logger.info('Deleted namespace %s', name)

    def manage_namespace(self, service: str, rules: list[PrometheusRule]):
        """Makes sure the service's namespace holds every rule in ``rules``, with their current expressions and
        durations. Rules in the namespace but not in ``rules`` are left alone; see :py:meth:`delete_rules`.

        :param service: Service whose namespace to manage.
        :type service: str

        :param rules: Rules the namespace should hold.
        :type rules: list[PrometheusRule]
        """

        name = namespace_name(service)
        document = self.describe_namespace(name)

        if document is None:
            if not rules:
                logger.info('No rules wanted for %s and no namespace exists', name)
                return
            self.create_namespace(name, rules)
            return

        if not document['groups']:
            logger.warning('Namespace %s has no rule groups; recreating it', name)
            try:
                self.delete_namespace(name)
            except ClientError as err:
                raise NamespaceRecreateError(f'Could not delete inconsistent namespace {name}') from err
            if not rules:
                logger.info('No rules wanted for %s; leaving it deleted', name)
                return
            self.create_namespace(name, rules)
            return

        group = next((group for group in document['groups'] if group.get('name') == PROMETHEUS_RULE_GROUP_NAME), None)
        if group is None:
            group = {'name': PROMETHEUS_RULE_GROUP_NAME, 'rules': []}
            document['groups'].append(group)
        group['rules'] = group.get('rules') or []
        existing = {rule.get('alert'): rule for rule in group['rules']}

        changed = False
        for rule in rules:
            current = existing.get(rule.alert)
            if current is None:
                group['rules'].append(rule.to_dict())
                changed = True
            elif current.get('expr') != rule.expr or current.get('for') != rule.for_:
                current['expr'] = rule.expr
                current['for'] = rule.for_
                changed = True

        if changed:
            self.put_namespace(name, document)
        else:
            logger.info('Namespace %s is already up to date', name)

    def delete_rules(self, service: str, service_identifiers: list[str]):
        """Removes every rule belonging to the given resources from the service's namespace. Empty rule groups are
        removed, and a namespace left with no groups is deleted.

        :param service: Service whose namespace to clean up.
        :type service: str

        :param service_identifiers: Identifiers of the resources whose rules should go. A rule belongs to a resource
            when its alert name contains the resource's identifier.
        :type service_identifiers: list[str]
        """

        name = namespace_name(service)
        document = self.describe_namespace(name)
        if document is None:
            logger.info('Namespace %s does not exist; no rules to delete', name)
            return

        removed = 0
        groups = []
        for group in document['groups']:
            rules = group.get('rules') or []
            kept = [
                rule
                for rule in rules
                if not any(identifier in rule.get('alert', '') for identifier in service_identifiers)
            ]
            removed += len(rules) - len(kept)
            if kept:
                groups.append({**group, 'rules': kept})
        document['groups'] = groups

        if not groups:
            self.delete_namespace(name)
        elif removed:
            self.put_namespace(name, document)
        else:
            logger.info('No rules for %s found in namespace %s', service_identifiers, name)

    def reconcile(self, service: str, resources: list[PrometheusResource]):
        """Runs one reconciliation pass for a batch of resources of the same service.

        :param service: The service all ``resources`` belong to.
        :type service: str

        :param resources: Resources to build rules for.
        :type resources: list[PrometheusResource]
        """

        self.ensure_workspace_active()
        self.check_rule_limit()

        rules = []
        for identity, tags, configs in resources:
            rules.extend(build_prometheus_rules(identity, tags, configs))
        self.manage_namespace(service, rules)


def reconcile_prometheus_rules(
    client,
    workspace_id: str,
    service: str,
    resources: list[PrometheusResource],
    settings: Settings = None,
    sleep: Callable[[float], None] = time.sleep,
):
    """Reconciles the rules of a batch of resources in a single pass over the service's namespace, retrying the whole
    pass with a linearly increasing backoff.

    :param client: A ``boto3`` ``amp`` client.

    :param workspace_id: ID of the Managed Prometheus workspace.
    :type workspace_id: str

    :param service: The service all ``resources`` belong to.
    :type service: str

    :param resources: Resources to build rules for.
    :type resources: list[PrometheusResource]

    :param settings: Delays, attempt counts, and limits to observe. Defaults to defaults.
    :type settings: Settings, optional

    :param sleep: Function to wait with. Defaults to ``time.sleep``.
    :type sleep: Callable[[float], None], optional

    :raises PrometheusFatalError: When the workspace is missing or full. Callers should fall back to CloudWatch.
    """

    settings = settings or Settings()
    manager = PrometheusRuleManager(client, workspace_id, settings=settings, sleep=sleep)
    with_linear_backoff(
        manager.reconcile,
        service,
        resources,
        attempts=settings.backoff_attempts,
        initial_delay=settings.backoff_initial_delay,
        increment=settings.backoff_increment,
        sleep=sleep,
        give_up_on=(PrometheusFatalError, NamespaceRecreateError),
    )


def delete_prometheus_rules(
    client,
    workspace_id: str,
    service: str,
    service_identifiers: list[str],
    settings: Settings = None,
    sleep: Callable[[float], None] = time.sleep,
):
    """Removes the rules of the given resources from the service's namespace, retrying with a linearly increasing
    backoff. See :py:meth:`PrometheusRuleManager.delete_rules`."""

    settings = settings or Settings()
    manager = PrometheusRuleManager(client, workspace_id, settings=settings, sleep=sleep)
    with_linear_backoff(
        manager.delete_rules,
        service,
        service_identifiers,
        attempts=settings.backoff_attempts,
        initial_delay=settings.backoff_initial_delay,
        increment=settings.backoff_increment,
        sleep=sleep,
    )
