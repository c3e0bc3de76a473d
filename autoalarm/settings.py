"""Runtime configuration for the Lambda handlers. Every value can be set through an environment variable of the same
name (upper-cased), and falls back to a default from :py:mod:`autoalarm.constants`."""

from autoalarm import env_var_number
from autoalarm.constants import (
    BACKOFF_ATTEMPTS,
    BACKOFF_INCREMENT,
    BACKOFF_INITIAL_DELAY,
    NAMESPACE_LIST_ATTEMPTS,
    NAMESPACE_LIST_RETRY_DELAY,
    NAMESPACE_PROPAGATION_DELAY,
    PROMETHEUS_RULE_LIMIT,
)
from dataclasses import dataclass
from os import environ


@dataclass(frozen=True)
class Settings:
    """Tunable values used throughout a handler invocation.

    :param prometheus_workspace_id: ID of the Managed Prometheus workspace to manage rules in. Empty to disable the
        Prometheus pathway entirely. Defaults to ''.
    :type prometheus_workspace_id: str, optional

    :param log_level: Level to log at. Defaults to 'INFO'.
    :type log_level: str, optional

    :param namespace_propagation_delay: Seconds to wait after creating a Prometheus namespace before anything reads it
        back. Defaults to :py:data:`autoalarm.constants.NAMESPACE_PROPAGATION_DELAY`.
    :type namespace_propagation_delay: float, optional

    :param namespace_list_retry_delay: Seconds to wait between failed attempts to list namespaces. Defaults to
        :py:data:`autoalarm.constants.NAMESPACE_LIST_RETRY_DELAY`.
    :type namespace_list_retry_delay: float, optional

    :param namespace_list_attempts: Number of times to try listing namespaces. Defaults to
        :py:data:`autoalarm.constants.NAMESPACE_LIST_ATTEMPTS`.
    :type namespace_list_attempts: int, optional

    :param prometheus_rule_limit: Number of rules in a workspace at which no more will be added. Defaults to
        :py:data:`autoalarm.constants.PROMETHEUS_RULE_LIMIT`.
    :type prometheus_rule_limit: int, optional

    :param backoff_attempts: Attempts made at a whole reconciliation call before giving up. Defaults to
        :py:data:`autoalarm.constants.BACKOFF_ATTEMPTS`.
    :type backoff_attempts: int, optional

    :param backoff_initial_delay: Seconds to wait before the first retry. Defaults to
        :py:data:`autoalarm.constants.BACKOFF_INITIAL_DELAY`.
    :type backoff_initial_delay: float, optional

    :param backoff_increment: Seconds added to the delay for each further retry. Defaults to
        :py:data:`autoalarm.constants.BACKOFF_INCREMENT`.
    :type backoff_increment: float, optional

    :param realarm_queue_url: URL of the queue the ReAlarm producer feeds. Defaults to ''.
    :type realarm_queue_url: str, optional
    """

    prometheus_workspace_id: str = ''
    log_level: str = 'INFO'
    namespace_propagation_delay: float = NAMESPACE_PROPAGATION_DELAY
    namespace_list_retry_delay: float = NAMESPACE_LIST_RETRY_DELAY
    namespace_list_attempts: int = NAMESPACE_LIST_ATTEMPTS
    prometheus_rule_limit: int = PROMETHEUS_RULE_LIMIT
    backoff_attempts: int = BACKOFF_ATTEMPTS
    backoff_initial_delay: float = BACKOFF_INITIAL_DELAY
    backoff_increment: float = BACKOFF_INCREMENT
    realarm_queue_url: str = ''

    @classmethod
    def from_environ(cls) -> 'Settings':
        """Builds a ``Settings`` from the process environment."""

        return cls(
            prometheus_workspace_id=environ.get('PROMETHEUS_WORKSPACE_ID', '').strip(),
            log_level=environ.get('LOG_LEVEL', 'INFO'),
            namespace_propagation_delay=env_var_number('NAMESPACE_PROPAGATION_DELAY', NAMESPACE_PROPAGATION_DELAY),
            namespace_list_retry_delay=env_var_number('NAMESPACE_LIST_RETRY_DELAY', NAMESPACE_LIST_RETRY_DELAY),
            namespace_list_attempts=int(env_var_number('NAMESPACE_LIST_ATTEMPTS', NAMESPACE_LIST_ATTEMPTS)),
            prometheus_rule_limit=int(env_var_number('PROMETHEUS_RULE_LIMIT', PROMETHEUS_RULE_LIMIT)),
            backoff_attempts=int(env_var_number('BACKOFF_ATTEMPTS', BACKOFF_ATTEMPTS)),
            backoff_initial_delay=env_var_number('BACKOFF_INITIAL_DELAY', BACKOFF_INITIAL_DELAY),
            backoff_increment=env_var_number('BACKOFF_INCREMENT', BACKOFF_INCREMENT),
            realarm_queue_url=environ.get('REALARM_QUEUE_URL', ''),
        )

    @property
    def prometheus_enabled(self) -> bool:
        """``True`` when a workspace has been configured."""

        return bool(self.prometheus_workspace_id)
