"""Errors raised by AutoAlarm. Malformed tags are never among them: option parsing degrades to defaults instead."""


class AutoAlarmError(Exception):
    """Base class for every error AutoAlarm raises on its own."""


class PrometheusFatalError(AutoAlarmError):
    """The Prometheus pathway cannot continue for this call. Callers should fall back to CloudWatch alarms for the
    affected resources."""


class PrometheusWorkspaceError(PrometheusFatalError):
    """The configured Managed Prometheus workspace is missing or not active.

    :param workspace_id: ID of the workspace in question.
    :type workspace_id: str

    :param status: The workspace's status code, or ``None`` if it does not exist.
    :type status: str, optional
    """

    def __init__(self, workspace_id: str, status: str = None):
        self.workspace_id = workspace_id
        self.status = status
        if status is None:
            message = f'Prometheus workspace {workspace_id} does not exist'
        else:
            message = f'Prometheus workspace {workspace_id} is {status}, not ACTIVE'
        super().__init__(message)


class PrometheusRuleLimitError(PrometheusFatalError):
    """The workspace holds too many alerting rules to safely add more.

    :param rule_count: Number of rules found across all namespaces of the workspace.
    :type rule_count: int

    :param limit: The ceiling which was reached.
    :type limit: int
    """

    def __init__(self, rule_count: int, limit: int):
        self.rule_count = rule_count
        self.limit = limit
        super().__init__(f'Prometheus workspace holds {rule_count} rules, at or above the limit of {limit}')


class NamespaceRecreateError(AutoAlarmError):
    """A namespace found in an inconsistent state could not be deleted so that it could be recreated."""


class UnsupportedEventError(AutoAlarmError):
    """An event was delivered which AutoAlarm does not know how to handle."""
