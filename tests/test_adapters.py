import pytest

from autoalarm import Dimension
from autoalarm.adapters import get_adapter
from autoalarm.adapters.ec2 import WINDOWS_STORAGE_DEFAULTS, Ec2Adapter
from autoalarm.adapters.elb import AlbAdapter, TargetGroupAdapter, load_balancer_dimension, target_group_dimension
from autoalarm.adapters.opensearch import OpenSearchAdapter, domain_name
from autoalarm.adapters.sqs import SqsAdapter, queue_name
from autoalarm.events import CloudTrailEvent, StateChangeEvent, TagChangeEvent
from botocore.exceptions import ClientError
from tests.conftest import FakeClients, FakePaginator, client_error, linux_image_id
from unittest.mock import MagicMock

ACCOUNT = '123456789012'
LB_ARN = f'arn:aws:elasticloadbalancing:us-east-1:{ACCOUNT}:loadbalancer/app/my-lb/50dc6c495c0c9188'
TG_ARN = f'arn:aws:elasticloadbalancing:us-east-1:{ACCOUNT}:targetgroup/my-tg/73e2d6bc24d8a067'
DOMAIN_ARN = f'arn:aws:es:us-east-1:{ACCOUNT}:domain/search-logs'


@pytest.fixture
def instance_id(clients):
    ec2 = clients.get('ec2')
    image_id = linux_image_id(ec2)
    response = ec2.run_instances(ImageId=image_id, MinCount=1, MaxCount=1, InstanceType='t3.micro')
    instance_id = response['Instances'][0]['InstanceId']
    ec2.create_tags(
        Resources=[instance_id], Tags=[{'Key': 'autoalarm:cpu', 'Value': '80/90'}, {'Key': 'Name', 'Value': 'web'}]
    )
    return instance_id


def cloudwatch_with_metrics(*metrics) -> MagicMock:
    cloudwatch = MagicMock()
    cloudwatch.get_paginator.return_value = FakePaginator([{'Metrics': list(metrics)}])
    return cloudwatch


def windows_ec2(instance_id: str = 'i-0123456789abcdef0') -> MagicMock:
    ec2 = MagicMock()
    ec2.describe_instances.return_value = {
        'Reservations': [
            {
                'Instances': [
                    {
                        'InstanceId': instance_id,
                        'Platform': 'windows',
                        'PlatformDetails': 'Windows',
                        'State': {'Name': 'running'},
                    }
                ]
            }
        ]
    }
    return ec2


def test_get_adapter(clients):
    assert isinstance(get_adapter('ec2', clients), Ec2Adapter)
    assert isinstance(get_adapter('sqs', clients), SqsAdapter)
    assert isinstance(get_adapter('alb', clients), AlbAdapter)
    assert isinstance(get_adapter('targetgroup', clients), TargetGroupAdapter)
    assert isinstance(get_adapter('opensearch', clients), OpenSearchAdapter)
    with pytest.raises(KeyError):
        get_adapter('rds', clients)


def test_prometheus_support(clients):
    assert get_adapter('ec2', clients).supports_prometheus
    assert not get_adapter('sqs', clients).supports_prometheus


def test_ec2_tags(clients, instance_id):
    tags = Ec2Adapter(clients).fetch_tags(instance_id)

    assert tags == {'autoalarm:cpu': '80/90', 'Name': 'web'}


def test_ec2_liveness(clients, instance_id):
    adapter = Ec2Adapter(clients)

    assert adapter.is_live(TagChangeEvent('ec2', instance_id))
    assert adapter.is_live(StateChangeEvent('ec2', instance_id, 'running'))
    assert not adapter.is_live(StateChangeEvent('ec2', instance_id, 'stopped'))
    assert not adapter.is_live(StateChangeEvent('ec2', instance_id, 'terminated'))


def test_stopped_instance_tag_changes_are_not_live(clients, instance_id):
    clients.get('ec2').stop_instances(InstanceIds=[instance_id])

    assert not Ec2Adapter(clients).is_live(TagChangeEvent('ec2', instance_id))


def test_missing_instance(clients):
    adapter = Ec2Adapter(clients)

    assert adapter.describe_instance('i-00000000000000000') is None
    assert adapter.instance_state('i-00000000000000000') is None
    assert not adapter.is_live(TagChangeEvent('ec2', 'i-00000000000000000'))


def test_ec2_identity(clients, instance_id):
    instance = clients.get('ec2').describe_instances(InstanceIds=[instance_id])['Reservations'][0]['Instances'][0]
    metric = {
        'Namespace': 'CWAgent',
        'MetricName': 'disk_used_percent',
        'Dimensions': [
            {'Name': 'path', 'Value': '/'},
            {'Name': 'InstanceId', 'Value': instance_id},
            {'Name': 'device', 'Value': 'nvme0n1p1'},
            {'Name': 'fstype', 'Value': 'xfs'},
        ],
    }
    fake = FakeClients(ec2=clients.get('ec2'), cloudwatch=cloudwatch_with_metrics(metric))

    identity = Ec2Adapter(fake).resource_identity(instance_id)

    assert identity.service == 'EC2'
    assert identity.service_identifier == instance_id
    assert identity.dimensions == [Dimension('InstanceId', instance_id)]
    assert identity.prometheus_instance == instance['PrivateIpAddress']
    assert identity.storage_paths == {
        '/': [
            Dimension('InstanceId', instance_id),
            Dimension('device', 'nvme0n1p1'),
            Dimension('path', '/'),
            Dimension('fstype', 'xfs'),
        ]
    }


def test_metrics_without_a_path_are_ignored():
    metric = {'Dimensions': [{'Name': 'InstanceId', 'Value': 'i-1'}, {'Name': 'device', 'Value': 'xvda'}]}
    fake = FakeClients(ec2=MagicMock(), cloudwatch=cloudwatch_with_metrics(metric))

    assert Ec2Adapter(fake).storage_paths('i-1') == {}


def test_windows_storage_paths():
    metric = {
        'Dimensions': [
            {'Name': 'InstanceId', 'Value': 'i-1'},
            {'Name': 'instance', 'Value': 'C:'},
            {'Name': 'objectname', 'Value': 'LogicalDisk'},
        ]
    }
    cloudwatch = cloudwatch_with_metrics(metric)
    fake = FakeClients(ec2=windows_ec2('i-1'), cloudwatch=cloudwatch)

    paths = Ec2Adapter(fake).storage_paths('i-1')

    assert list(paths) == ['C:']
    assert Dimension('objectname', 'LogicalDisk') in paths['C:']


def test_linux_metric_configs(clients, instance_id):
    assert not Ec2Adapter(clients).is_windows(instance_id)
    configs = {config.tag_key: config for config in Ec2Adapter(clients).metric_alarm_configs(instance_id)}

    assert configs['memory'].metric_name == 'mem_used_percent'
    assert configs['memory-anomaly'].metric_name == 'mem_used_percent'
    assert configs['storage'].metric_name == 'disk_used_percent'
    assert configs['storage'].defaults.comparison_operator == 'GreaterThanThreshold'
    assert configs['cpu'].metric_name == 'CPUUtilization'


def test_windows_metric_configs():
    fake = FakeClients(ec2=windows_ec2(), cloudwatch=MagicMock())

    configs = {config.tag_key: config for config in Ec2Adapter(fake).metric_alarm_configs('i-0123456789abcdef0')}

    assert configs['memory'].metric_name == 'Memory % Committed Bytes In Use'
    assert configs['storage'].metric_name == 'LogicalDisk % Free Space'
    assert configs['storage'].defaults == WINDOWS_STORAGE_DEFAULTS


def test_instance_descriptions_are_cached():
    ec2 = windows_ec2()
    adapter = Ec2Adapter(FakeClients(ec2=ec2, cloudwatch=MagicMock()))

    adapter.is_windows('i-0123456789abcdef0')
    adapter.instance_state('i-0123456789abcdef0')

    assert ec2.describe_instances.call_count == 1


def test_other_describe_errors_are_raised():
    ec2 = MagicMock()
    ec2.describe_instances.side_effect = client_error('UnauthorizedOperation', 'DescribeInstances')

    with pytest.raises(ClientError):
        Ec2Adapter(FakeClients(ec2=ec2)).describe_instance('i-1')


def test_sqs_adapter(clients):
    sqs = clients.get('sqs')
    url = sqs.create_queue(QueueName='orders', tags={'autoalarm:messages-sent': '10/20'})['QueueUrl']
    adapter = SqsAdapter(clients)

    assert adapter.resolve_resource_id(f'arn:aws:sqs:us-east-1:{ACCOUNT}:orders') == url
    assert adapter.resolve_resource_id(url) == url
    assert adapter.fetch_tags(url) == {'autoalarm:messages-sent': '10/20'}
    assert adapter.service_identifier(url) == 'orders'

    identity = adapter.resource_identity(url)
    assert identity.service == 'SQS'
    assert identity.dimensions == [Dimension('QueueName', 'orders')]


def test_queue_without_tags(clients):
    url = clients.get('sqs').create_queue(QueueName='plain')['QueueUrl']

    assert SqsAdapter(clients).fetch_tags(url) == {}


def test_queue_name():
    assert queue_name('https://sqs.us-east-1.amazonaws.com/123456789012/orders.fifo') == 'orders.fifo'


def test_sqs_liveness(clients):
    adapter = SqsAdapter(clients)

    assert adapter.is_live(CloudTrailEvent('sqs', 'https://sqs/q', 'CreateQueue'))
    assert adapter.is_live(TagChangeEvent('sqs', 'https://sqs/q'))
    assert not adapter.is_live(CloudTrailEvent('sqs', 'https://sqs/q', 'DeleteQueue'))


def test_elb_dimensions():
    assert load_balancer_dimension(LB_ARN) == 'app/my-lb/50dc6c495c0c9188'
    assert target_group_dimension(TG_ARN) == 'targetgroup/my-tg/73e2d6bc24d8a067'


def test_alb_adapter():
    elbv2 = MagicMock()
    elbv2.describe_tags.return_value = {
        'TagDescriptions': [{'ResourceArn': LB_ARN, 'Tags': [{'Key': 'autoalarm:5xx-count', 'Value': '-/10'}]}]
    }
    adapter = AlbAdapter(FakeClients(elbv2=elbv2))

    assert adapter.fetch_tags(LB_ARN) == {'autoalarm:5xx-count': '-/10'}
    elbv2.describe_tags.assert_called_once_with(ResourceArns=[LB_ARN])

    identity = adapter.resource_identity(LB_ARN)
    assert identity.service_identifier == 'my-lb'
    assert identity.dimensions == [Dimension('LoadBalancer', 'app/my-lb/50dc6c495c0c9188')]
    assert identity.arn == LB_ARN


def test_target_group_adapter():
    elbv2 = MagicMock()
    elbv2.describe_target_groups.return_value = {'TargetGroups': [{'LoadBalancerArns': [LB_ARN]}]}

    identity = TargetGroupAdapter(FakeClients(elbv2=elbv2)).resource_identity(TG_ARN)

    assert identity.service == 'TargetGroup'
    assert identity.service_identifier == 'my-tg'
    assert identity.dimensions == [
        Dimension('TargetGroup', 'targetgroup/my-tg/73e2d6bc24d8a067'),
        Dimension('LoadBalancer', 'app/my-lb/50dc6c495c0c9188'),
    ]


def test_unattached_target_group():
    elbv2 = MagicMock()
    elbv2.describe_target_groups.return_value = {'TargetGroups': [{'LoadBalancerArns': []}]}

    identity = TargetGroupAdapter(FakeClients(elbv2=elbv2)).resource_identity(TG_ARN)

    assert identity.dimensions == [Dimension('TargetGroup', 'targetgroup/my-tg/73e2d6bc24d8a067')]


def test_deleted_target_group_identifier_needs_no_api_calls():
    elbv2 = MagicMock()

    assert TargetGroupAdapter(FakeClients(elbv2=elbv2)).service_identifier(TG_ARN) == 'my-tg'
    assert elbv2.mock_calls == []


def test_domain_name():
    assert domain_name(DOMAIN_ARN) == 'search-logs'


def test_opensearch_adapter():
    opensearch = MagicMock()
    opensearch.list_tags.return_value = {
        'TagList': [{'Key': 'autoalarm:jvm-memory', 'Value': '70/85'}, {'Key': 'team', 'Value': 'search'}]
    }
    adapter = OpenSearchAdapter(FakeClients(opensearch=opensearch))

    assert adapter.fetch_tags(DOMAIN_ARN) == {'autoalarm:jvm-memory': '70/85', 'team': 'search'}
    opensearch.list_tags.assert_called_once_with(ARN=DOMAIN_ARN)
    assert adapter.service_identifier(DOMAIN_ARN) == 'search-logs'

    identity = adapter.resource_identity(DOMAIN_ARN)
    assert identity.service == 'OpenSearch'
    assert identity.service_identifier == 'search-logs'
    assert identity.dimensions == [Dimension('DomainName', 'search-logs'), Dimension('ClientId', ACCOUNT)]
    assert not adapter.supports_prometheus


def test_domain_without_tags():
    opensearch = MagicMock()
    opensearch.list_tags.return_value = {'TagList': []}

    assert OpenSearchAdapter(FakeClients(opensearch=opensearch)).fetch_tags(DOMAIN_ARN) == {}


def test_deleted_domain_is_not_live():
    adapter = OpenSearchAdapter(FakeClients())

    assert adapter.is_live(CloudTrailEvent('opensearch', DOMAIN_ARN, 'CreateDomain'))
    assert adapter.is_live(TagChangeEvent('opensearch', DOMAIN_ARN))
    assert not adapter.is_live(CloudTrailEvent('opensearch', DOMAIN_ARN, 'DeleteDomain'))
    assert adapter.service_identifier(DOMAIN_ARN) == 'search-logs'
