"""Application Load Balancers and their target groups. Both are identified by ARN, and their CloudWatch dimensions are
suffixes of those ARNs. For example, a load balancer with the ARN

    ``arn:aws:elasticloadbalancing:us-east-1:123456789012:loadbalancer/app/my-lb/50dc6c495c0c9188``

reports metrics with the dimension ``LoadBalancer=app/my-lb/50dc6c495c0c9188``, and its alarms are named after
``my-lb``.
"""

import logging

from autoalarm import Dimension, ResourceIdentity
from autoalarm.adapters import ServiceAdapter

logger = logging.getLogger(__name__)


def arn_resource(arn: str) -> str:
    """Returns the resource part of an ARN, everything after the fifth colon."""

    return arn.split(':', 5)[-1]


def load_balancer_dimension(arn: str) -> str:
    """Returns the ``LoadBalancer`` dimension value for a load balancer ARN."""

    return arn_resource(arn).removeprefix('loadbalancer/')


def target_group_dimension(arn: str) -> str:
    """Returns the ``TargetGroup`` dimension value for a target group ARN."""

    return arn_resource(arn)


class ElbAdapter(ServiceAdapter):
    """Behavior shared by the Elastic Load Balancing adapters."""

    @property
    def elbv2(self):
        return self.clients.get('elbv2')

    def fetch_tags(self, resource_id: str) -> dict[str, str]:
        response = self.elbv2.describe_tags(ResourceArns=[resource_id])
        tags = {}
        for description in response.get('TagDescriptions', []):
            for tag in description.get('Tags', []):
                tags[tag['Key']] = tag.get('Value', '')
        logger.debug('%s %s has tags %s', self.service, resource_id, tags)
        return tags


class AlbAdapter(ElbAdapter):
    """Adapts Application Load Balancers."""

    key = 'alb'
    service = 'ALB'

    def service_identifier(self, resource_id: str) -> str:
        # app/{name}/{id}
        return load_balancer_dimension(resource_id).split('/')[1]

    def resource_identity(self, resource_id: str) -> ResourceIdentity:
        return ResourceIdentity(
            service=self.service,
            service_identifier=self.service_identifier(resource_id),
            dimensions=[Dimension('LoadBalancer', load_balancer_dimension(resource_id))],
            arn=resource_id,
        )


class TargetGroupAdapter(ElbAdapter):
    """Adapts target groups. Their metrics are reported per load balancer, so the first load balancer the group is
    attached to supplies a second dimension."""

    key = 'targetgroup'
    service = 'TargetGroup'

    def service_identifier(self, resource_id: str) -> str:
        # targetgroup/{name}/{id}
        return target_group_dimension(resource_id).split('/')[1]

    def resource_identity(self, resource_id: str) -> ResourceIdentity:
        dimensions = [Dimension('TargetGroup', target_group_dimension(resource_id))]

        response = self.elbv2.describe_target_groups(TargetGroupArns=[resource_id])
        groups = response.get('TargetGroups', [])
        load_balancers = groups[0].get('LoadBalancerArns', []) if groups else []
        if load_balancers:
            dimensions.append(Dimension('LoadBalancer', load_balancer_dimension(load_balancers[0])))
        else:
            logger.warning('Target group %s is not attached to a load balancer', resource_id)

        return ResourceIdentity(
            service=self.service,
            service_identifier=self.service_identifier(resource_id),
            dimensions=dimensions,
            arn=resource_id,
        )
