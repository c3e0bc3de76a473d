"""OpenSearch Service domains, identified by domain ARN. Alarms are named after the domain's name."""

import logging

from autoalarm import Dimension, ResourceIdentity
from autoalarm.adapters import ServiceAdapter

logger = logging.getLogger(__name__)


def domain_name(domain_arn: str) -> str:
    """Returns the name of a domain given its ARN, ``arn:aws:es:region:account:domain/name``."""

    return domain_arn.split('/')[-1]


class OpenSearchAdapter(ServiceAdapter):
    """Adapts OpenSearch Service domains. Domain metrics are dimensioned by the domain's name and the ID of the
    account owning it."""

    key = 'opensearch'
    service = 'OpenSearch'

    @property
    def opensearch(self):
        return self.clients.get('opensearch')

    def fetch_tags(self, resource_id: str) -> dict[str, str]:
        tag_list = self.opensearch.list_tags(ARN=resource_id).get('TagList', [])
        tags = {tag['Key']: tag['Value'] for tag in tag_list}
        logger.debug('Domain %s has tags %s', resource_id, tags)
        return tags

    def service_identifier(self, resource_id: str) -> str:
        return domain_name(resource_id)

    def resource_identity(self, resource_id: str) -> ResourceIdentity:
        name = domain_name(resource_id)
        account = resource_id.split(':')[4]
        return ResourceIdentity(
            service=self.service,
            service_identifier=name,
            dimensions=[Dimension('DomainName', name), Dimension('ClientId', account)],
        )
