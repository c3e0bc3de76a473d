"""Turns the EventBridge events AutoAlarm subscribes to into typed values. Everything downstream of
:py:func:`parse_event` works with these values and never looks at the raw payload again.

Three kinds of event arrive:

    - *Tag Change on Resource* events from ``aws.tag``, sent whenever an ``autoalarm:`` tag changes.
    - *EC2 Instance State-change Notification* events from ``aws.ec2``.
    - *AWS API Call via CloudTrail* events for resources which are created or deleted, such as load balancers, target
      groups, queues, and OpenSearch domains.
"""

import json

from autoalarm.exceptions import UnsupportedEventError
from dataclasses import dataclass, field

TAG_CHANGE_DETAIL_TYPE = 'Tag Change on Resource'
STATE_CHANGE_DETAIL_TYPE = 'EC2 Instance State-change Notification'
CLOUDTRAIL_DETAIL_TYPE = 'AWS API Call via CloudTrail'

#: Maps the ``service`` and ``resource-type`` of a tag change event to the service key AutoAlarm knows it by
TAG_EVENT_SERVICES = {
    ('ec2', 'instance'): 'ec2',
    ('elasticloadbalancing', 'loadbalancer'): 'alb',
    ('elasticloadbalancing', 'targetgroup'): 'targetgroup',
    ('es', 'domain'): 'opensearch',
    ('sqs', 'queue'): 'sqs',
}

#: For each CloudTrail event AutoAlarm handles, the service key it belongs to and where to find the resource's ID
CLOUDTRAIL_EVENTS = {
    'CreateLoadBalancer': ('alb', ('responseElements', 'loadBalancers', 0, 'loadBalancerArn')),
    'DeleteLoadBalancer': ('alb', ('requestParameters', 'loadBalancerArn')),
    'CreateTargetGroup': ('targetgroup', ('responseElements', 'targetGroups', 0, 'targetGroupArn')),
    'DeleteTargetGroup': ('targetgroup', ('requestParameters', 'targetGroupArn')),
    'CreateQueue': ('sqs', ('responseElements', 'queueUrl')),
    'DeleteQueue': ('sqs', ('requestParameters', 'queueUrl')),
    'TagQueue': ('sqs', ('requestParameters', 'queueUrl')),
    'UntagQueue': ('sqs', ('requestParameters', 'queueUrl')),
    'CreateDomain': ('opensearch', ('responseElements', 'domainStatus', 'aRN')),
    'DeleteDomain': ('opensearch', ('responseElements', 'domainStatus', 'aRN')),
}


@dataclass(frozen=True)
class TagChangeEvent:
    """Tags changed on a resource.

    :param service: Service key, such as ``ec2``.
    :type service: str

    :param resource_id: The resource's ID for EC2 instances, otherwise its ARN.
    :type resource_id: str

    :param changed_tag_keys: Keys of the tags which changed.
    :type changed_tag_keys: list[str]

    :param tags: The resource's tags after the change.
    :type tags: dict[str, str]
    """

    service: str
    resource_id: str
    changed_tag_keys: list[str] = field(default_factory=list)
    tags: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class StateChangeEvent:
    """An EC2 instance changed state."""

    service: str
    resource_id: str
    state: str


@dataclass(frozen=True)
class CloudTrailEvent:
    """An API call created, changed, or deleted a resource."""

    service: str
    resource_id: str
    event_name: str

    @property
    def is_delete(self) -> bool:
        """``True`` when the call deleted the resource."""

        return self.event_name.startswith('Delete')


#: Any event AutoAlarm handles
type Event = TagChangeEvent | StateChangeEvent | CloudTrailEvent


def _dig(data, path: tuple):
    for key in path:
        try:
            data = data[key]
        except (KeyError, IndexError, TypeError):
            return None
    return data


def parse_event(payload: dict | str) -> Event:
    """Parses an EventBridge event.

    :param payload: The event, either decoded or as the JSON body of an SQS message.
    :type payload: dict | str

    :raises UnsupportedEventError: When the event is not one AutoAlarm handles, or lacks the fields it needs.

    :rtype: Event
    """

    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError as err:
            raise UnsupportedEventError(f'Event is not valid JSON: {err}') from err
    if not isinstance(payload, dict):
        raise UnsupportedEventError(f'Event is a {type(payload).__name__}, not an object')

    detail_type = payload.get('detail-type')
    detail = payload.get('detail') or {}

    if detail_type == TAG_CHANGE_DETAIL_TYPE:
        return _parse_tag_change(payload, detail)
    if detail_type == STATE_CHANGE_DETAIL_TYPE:
        instance_id = detail.get('instance-id')
        state = detail.get('state')
        if not instance_id or not state:
            raise UnsupportedEventError('State change event has no instance ID or state')
        return StateChangeEvent(service='ec2', resource_id=instance_id, state=state)
    if detail_type == CLOUDTRAIL_DETAIL_TYPE:
        return _parse_cloudtrail(detail)

    raise UnsupportedEventError(f'Unsupported event from {payload.get("source")}: {detail_type}')


def _parse_tag_change(payload: dict, detail: dict) -> TagChangeEvent:
    service = TAG_EVENT_SERVICES.get((detail.get('service'), detail.get('resource-type')))
    if service is None:
        raise UnsupportedEventError(
            f'Unsupported tag change on {detail.get("service")} {detail.get("resource-type")} resource'
        )

    resources = payload.get('resources') or []
    if not resources:
        raise UnsupportedEventError('Tag change event names no resource')
    resource_id = resources[0]
    # EC2 APIs take instance IDs, not ARNs
    if service == 'ec2':
        resource_id = resource_id.split('/')[-1]

    return TagChangeEvent(
        service=service,
        resource_id=resource_id,
        changed_tag_keys=list(detail.get('changed-tag-keys') or []),
        tags=dict(detail.get('tags') or {}),
    )


def _parse_cloudtrail(detail: dict) -> CloudTrailEvent:
    event_name = detail.get('eventName')
    if event_name not in CLOUDTRAIL_EVENTS:
        raise UnsupportedEventError(f'Unsupported CloudTrail event {event_name}')
    service, path = CLOUDTRAIL_EVENTS[event_name]

    resource_id = _dig(detail, path)
    if not resource_id:
        raise UnsupportedEventError(f'{event_name} event has no resource ID')
    return CloudTrailEvent(service=service, resource_id=resource_id, event_name=event_name)
