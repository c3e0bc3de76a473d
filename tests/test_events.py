import json
import pytest

from autoalarm.events import CloudTrailEvent, StateChangeEvent, TagChangeEvent, parse_event
from autoalarm.exceptions import UnsupportedEventError

ACCOUNT = '123456789012'
LB_ARN = f'arn:aws:elasticloadbalancing:us-east-1:{ACCOUNT}:loadbalancer/app/my-lb/50dc6c495c0c9188'
TG_ARN = f'arn:aws:elasticloadbalancing:us-east-1:{ACCOUNT}:targetgroup/my-tg/73e2d6bc24d8a067'
DOMAIN_ARN = f'arn:aws:es:us-east-1:{ACCOUNT}:domain/search-logs'


def tag_change(service: str, resource_type: str, resource: str, **detail) -> dict:
    return {
        'source': 'aws.tag',
        'detail-type': 'Tag Change on Resource',
        'resources': [resource],
        'detail': {'service': service, 'resource-type': resource_type, **detail},
    }


def cloudtrail(event_name: str, **detail) -> dict:
    return {
        'source': 'aws.elasticloadbalancing',
        'detail-type': 'AWS API Call via CloudTrail',
        'detail': {'eventName': event_name, **detail},
    }


def test_instance_tag_change():
    payload = tag_change(
        'ec2',
        'instance',
        f'arn:aws:ec2:us-east-1:{ACCOUNT}:instance/i-0123456789abcdef0',
        **{'changed-tag-keys': ['autoalarm:cpu'], 'tags': {'autoalarm:cpu': '80/90', 'Name': 'web'}},
    )

    event = parse_event(payload)

    assert event == TagChangeEvent(
        service='ec2',
        resource_id='i-0123456789abcdef0',
        changed_tag_keys=['autoalarm:cpu'],
        tags={'autoalarm:cpu': '80/90', 'Name': 'web'},
    )


@pytest.mark.parametrize(
    'service,resource_type,resource,key',
    [
        ('elasticloadbalancing', 'loadbalancer', LB_ARN, 'alb'),
        ('elasticloadbalancing', 'targetgroup', TG_ARN, 'targetgroup'),
        ('sqs', 'queue', f'arn:aws:sqs:us-east-1:{ACCOUNT}:my-queue', 'sqs'),
        ('es', 'domain', DOMAIN_ARN, 'opensearch'),
    ],
)
def test_tag_changes_keep_arns(service, resource_type, resource, key):
    event = parse_event(tag_change(service, resource_type, resource))

    assert event.service == key
    assert event.resource_id == resource
    assert event.changed_tag_keys == []


def test_state_change():
    payload = {
        'source': 'aws.ec2',
        'detail-type': 'EC2 Instance State-change Notification',
        'detail': {'instance-id': 'i-0123456789abcdef0', 'state': 'stopped'},
    }

    assert parse_event(payload) == StateChangeEvent('ec2', 'i-0123456789abcdef0', 'stopped')


def test_state_change_without_state():
    payload = {
        'source': 'aws.ec2',
        'detail-type': 'EC2 Instance State-change Notification',
        'detail': {'instance-id': 'i-0123456789abcdef0'},
    }

    with pytest.raises(UnsupportedEventError):
        parse_event(payload)


@pytest.mark.parametrize(
    'event_name,detail,service,resource_id',
    [
        ('CreateLoadBalancer', {'responseElements': {'loadBalancers': [{'loadBalancerArn': LB_ARN}]}}, 'alb', LB_ARN),
        ('DeleteLoadBalancer', {'requestParameters': {'loadBalancerArn': LB_ARN}}, 'alb', LB_ARN),
        (
            'CreateTargetGroup',
            {'responseElements': {'targetGroups': [{'targetGroupArn': TG_ARN}]}},
            'targetgroup',
            TG_ARN,
        ),
        ('DeleteTargetGroup', {'requestParameters': {'targetGroupArn': TG_ARN}}, 'targetgroup', TG_ARN),
        ('CreateQueue', {'responseElements': {'queueUrl': 'https://sqs/q'}}, 'sqs', 'https://sqs/q'),
        ('DeleteQueue', {'requestParameters': {'queueUrl': 'https://sqs/q'}}, 'sqs', 'https://sqs/q'),
        ('TagQueue', {'requestParameters': {'queueUrl': 'https://sqs/q'}}, 'sqs', 'https://sqs/q'),
        ('CreateDomain', {'responseElements': {'domainStatus': {'aRN': DOMAIN_ARN}}}, 'opensearch', DOMAIN_ARN),
        ('DeleteDomain', {'responseElements': {'domainStatus': {'aRN': DOMAIN_ARN}}}, 'opensearch', DOMAIN_ARN),
    ],
)
def test_cloudtrail_events(event_name, detail, service, resource_id):
    event = parse_event(cloudtrail(event_name, **detail))

    assert event == CloudTrailEvent(service, resource_id, event_name)
    assert event.is_delete == event_name.startswith('Delete')


def test_cloudtrail_event_without_resource():
    with pytest.raises(UnsupportedEventError):
        parse_event(cloudtrail('CreateLoadBalancer', responseElements={'loadBalancers': []}))


def test_failed_cloudtrail_call_has_no_resource():
    with pytest.raises(UnsupportedEventError):
        parse_event(cloudtrail('CreateQueue', responseElements=None))


def test_json_bodies_are_decoded():
    payload = tag_change('sqs', 'queue', f'arn:aws:sqs:us-east-1:{ACCOUNT}:q')

    assert parse_event(json.dumps(payload)) == parse_event(payload)


@pytest.mark.parametrize(
    'payload',
    [
        'not json',
        '[1, 2]',
        {'detail-type': 'Scheduled Event', 'source': 'aws.events'},
        cloudtrail('RunInstances'),
        tag_change('rds', 'db', 'arn:aws:rds:us-east-1:123456789012:db:my-db'),
        {'detail-type': 'Tag Change on Resource', 'detail': {'service': 'sqs', 'resource-type': 'queue'}},
    ],
)
def test_unsupported_events(payload):
    with pytest.raises(UnsupportedEventError):
        parse_event(payload)
