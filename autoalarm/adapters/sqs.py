"""SQS queues, identified by queue URL. Alarms are named after the queue's name."""

import logging

from autoalarm import Dimension, ResourceIdentity
from autoalarm.adapters import ServiceAdapter

logger = logging.getLogger(__name__)


def queue_name(queue_url: str) -> str:
    """Returns the name of a queue given its URL."""

    return queue_url.rstrip('/').split('/')[-1]


class SqsAdapter(ServiceAdapter):
    """Adapts SQS queues."""

    key = 'sqs'
    service = 'SQS'

    @property
    def sqs(self):
        return self.clients.get('sqs')

    def resolve_resource_id(self, resource_id: str) -> str:
        """Tag change events name queues by ARN (``arn:aws:sqs:region:account:name``), but the SQS API wants URLs."""

        if not resource_id.startswith('arn:'):
            return resource_id
        parts = resource_id.split(':')
        account, name = parts[4], parts[5]
        return self.sqs.get_queue_url(QueueName=name, QueueOwnerAWSAccountId=account)['QueueUrl']

    def fetch_tags(self, resource_id: str) -> dict[str, str]:
        tags = self.sqs.list_queue_tags(QueueUrl=resource_id).get('Tags', {})
        logger.debug('Queue %s has tags %s', resource_id, tags)
        return tags

    def service_identifier(self, resource_id: str) -> str:
        return queue_name(resource_id)

    def resource_identity(self, resource_id: str) -> ResourceIdentity:
        name = queue_name(resource_id)
        return ResourceIdentity(
            service=self.service,
            service_identifier=name,
            dimensions=[Dimension('QueueName', name)],
        )
