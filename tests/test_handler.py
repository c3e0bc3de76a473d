import json
import pytest

from autoalarm import handler as handler_module
from autoalarm.adapters.ec2 import Ec2Adapter
from autoalarm.adapters.sqs import SqsAdapter
from autoalarm.handler import examine_record, process_records, wants_prometheus
from autoalarm.settings import Settings
from tests.conftest import FakeAmpClient, linux_image_id

ACCOUNT = '123456789012'
WORKSPACE = 'ws-0123456789'
PROMETHEUS_SETTINGS = Settings(prometheus_workspace_id=WORKSPACE)


class MixedClients:
    """Hands out moto clients, except for a fake Managed Prometheus client."""

    def __init__(self, clients, amp: FakeAmpClient):
        self.clients = clients
        self.amp = amp
        self.region_name = clients.region_name

    def get(self, service: str, region_name: str = None):
        if service == 'amp':
            return self.amp
        return self.clients.get(service, region_name)


@pytest.fixture
def mixed(clients, amp):
    return MixedClients(clients, amp)


@pytest.fixture
def ec2(clients):
    return clients.get('ec2')


def launch(ec2, tags: dict = None) -> str:
    image_id = linux_image_id(ec2)
    instance_id = ec2.run_instances(ImageId=image_id, MinCount=1, MaxCount=1)['Instances'][0]['InstanceId']
    if tags:
        ec2.create_tags(Resources=[instance_id], Tags=[{'Key': key, 'Value': value} for key, value in tags.items()])
    return instance_id


def record(message_id: str, body) -> dict:
    return {'messageId': message_id, 'body': body if isinstance(body, str) else json.dumps(body)}


def tag_change(instance_id: str, changed: list[str] = None) -> dict:
    return {
        'source': 'aws.tag',
        'detail-type': 'Tag Change on Resource',
        'resources': [f'arn:aws:ec2:us-east-1:{ACCOUNT}:instance/{instance_id}'],
        'detail': {'service': 'ec2', 'resource-type': 'instance', 'changed-tag-keys': changed or []},
    }


def state_change(instance_id: str, state: str) -> dict:
    return {
        'source': 'aws.ec2',
        'detail-type': 'EC2 Instance State-change Notification',
        'detail': {'instance-id': instance_id, 'state': state},
    }


def alarm_names(cloudwatch) -> set[str]:
    return {alarm['AlarmName'] for alarm in cloudwatch.describe_alarms()['MetricAlarms']}


def failures(response: dict) -> list[str]:
    return [failure['itemIdentifier'] for failure in response['batchItemFailures']]


def test_default_alarms_for_a_running_instance(clients, ec2, cloudwatch, sleep):
    instance_id = launch(ec2)

    response = process_records([record('m1', tag_change(instance_id))], clients, Settings(), sleep=sleep)

    assert failures(response) == []
    prefix = f'AutoAlarm-EC2-{instance_id}-'
    assert alarm_names(cloudwatch) == {
        f'{prefix}cpu-Warning',
        f'{prefix}cpu-Critical',
        f'{prefix}memory-Warning',
        f'{prefix}memory-Critical',
        f'{prefix}storage-Warning',
        f'{prefix}storage-Critical',
    }


def test_stopping_an_instance_deletes_its_alarms(clients, ec2, cloudwatch, sleep):
    instance_id = launch(ec2)
    process_records([record('m1', tag_change(instance_id))], clients, Settings(), sleep=sleep)

    response = process_records([record('m2', state_change(instance_id, 'stopped'))], clients, Settings(), sleep=sleep)

    assert failures(response) == []
    assert alarm_names(cloudwatch) == set()


def test_tag_changes_on_stopped_instances_are_ignored(clients, ec2, cloudwatch, sleep):
    instance_id = launch(ec2)
    process_records([record('m1', tag_change(instance_id))], clients, Settings(), sleep=sleep)
    ec2.stop_instances(InstanceIds=[instance_id])

    response = process_records([record('m2', tag_change(instance_id))], clients, Settings(), sleep=sleep)

    assert failures(response) == []
    assert len(alarm_names(cloudwatch)) == 6


def test_disabling_alarms_deletes_them(clients, ec2, cloudwatch, sleep):
    instance_id = launch(ec2)
    process_records([record('m1', tag_change(instance_id))], clients, Settings(), sleep=sleep)
    ec2.create_tags(Resources=[instance_id], Tags=[{'Key': 'autoalarm:enabled', 'Value': 'False'}])

    process_records([record('m2', tag_change(instance_id, ['autoalarm:enabled']))], clients, Settings(), sleep=sleep)

    assert alarm_names(cloudwatch) == set()


def test_deleted_queue_loses_its_alarms(clients, cloudwatch, sleep):
    cloudwatch.put_metric_alarm(
        AlarmName='AutoAlarm-SQS-orders-messages-sent-Warning',
        MetricName='NumberOfMessagesSent',
        Namespace='AWS/SQS',
        Period=60,
        EvaluationPeriods=1,
        Threshold=1,
        ComparisonOperator='GreaterThanThreshold',
        Statistic='Sum',
    )
    body = {
        'source': 'aws.sqs',
        'detail-type': 'AWS API Call via CloudTrail',
        'detail': {
            'eventName': 'DeleteQueue',
            'requestParameters': {'queueUrl': f'https://sqs.us-east-1.amazonaws.com/{ACCOUNT}/orders'},
        },
    }

    response = process_records([record('m1', body)], clients, Settings(), sleep=sleep)

    assert failures(response) == []
    assert alarm_names(cloudwatch) == set()


def test_bad_records_fail_alone(clients, ec2, cloudwatch, sleep):
    instance_id = launch(ec2)
    records = [record('bad', 'not json'), record('good', tag_change(instance_id))]

    response = process_records(records, clients, Settings(), sleep=sleep)

    assert failures(response) == ['bad']
    assert len(alarm_names(cloudwatch)) == 6


def test_cloudwatch_failures_are_reported(clients, ec2, mocker, sleep):
    instance_id = launch(ec2)
    mocker.patch.object(handler_module, 'reconcile_cloudwatch_alarms', side_effect=RuntimeError('boom'))

    response = process_records([record('m1', tag_change(instance_id))], clients, Settings(), sleep=sleep)

    assert failures(response) == ['m1']


def test_prometheus_targets_get_rules_instead_of_alarms(mixed, ec2, cloudwatch, amp, sleeps, sleep):
    instance_id = launch(ec2, {'autoalarm:target': 'Prometheus'})

    response = process_records([record('m1', tag_change(instance_id))], mixed, PROMETHEUS_SETTINGS, sleep=sleep)

    assert failures(response) == []
    assert 'AutoAlarm-EC2' in amp.namespaces
    assert f'AutoAlarm-EC2-{instance_id}-cpu-Critical' in amp.namespaces['AutoAlarm-EC2'].decode()
    assert alarm_names(cloudwatch) == set()
    assert sleeps == [PROMETHEUS_SETTINGS.namespace_propagation_delay]


def test_prometheus_batches_share_one_namespace_write(mixed, ec2, amp, sleep):
    first = launch(ec2, {'autoalarm:target': 'Prometheus'})
    second = launch(ec2, {'autoalarm:target': 'prometheus'})

    records = [record('m1', tag_change(first)), record('m2', tag_change(second))]
    response = process_records(records, mixed, PROMETHEUS_SETTINGS, sleep=sleep)

    assert failures(response) == []
    assert amp.calls.count('create_rule_groups_namespace') == 1
    assert amp.calls.count('put_rule_groups_namespace') == 0


def test_unusable_workspace_falls_back_to_cloudwatch(clients, ec2, cloudwatch, sleep):
    amp = FakeAmpClient(status='DELETING')
    instance_id = launch(ec2, {'autoalarm:target': 'Prometheus'})

    response = process_records(
        [record('m1', tag_change(instance_id))], MixedClients(clients, amp), PROMETHEUS_SETTINGS, sleep=sleep
    )

    assert failures(response) == []
    assert amp.namespaces == {}
    assert len(alarm_names(cloudwatch)) == 6


def test_prometheus_errors_fail_the_record(mixed, ec2, cloudwatch, amp, sleeps, sleep):
    amp.failures['describe_workspace'] = ['InternalServerException'] * 10
    instance_id = launch(ec2, {'autoalarm:target': 'Prometheus'})

    response = process_records([record('m1', tag_change(instance_id))], mixed, PROMETHEUS_SETTINGS, sleep=sleep)

    assert failures(response) == ['m1']
    assert alarm_names(cloudwatch) == set()
    assert sleeps == [5, 10, 15]


def test_moving_back_to_cloudwatch_removes_rules(mixed, ec2, cloudwatch, amp, sleep):
    instance_id = launch(ec2, {'autoalarm:target': 'Prometheus'})
    process_records([record('m1', tag_change(instance_id))], mixed, PROMETHEUS_SETTINGS, sleep=sleep)
    ec2.create_tags(Resources=[instance_id], Tags=[{'Key': 'autoalarm:target', 'Value': 'CloudWatch'}])

    response = process_records(
        [record('m2', tag_change(instance_id, ['autoalarm:target']))], mixed, PROMETHEUS_SETTINGS, sleep=sleep
    )

    assert failures(response) == []
    assert amp.namespaces == {}
    assert len(alarm_names(cloudwatch)) == 6


def test_prometheus_needs_a_workspace(clients):
    adapter = Ec2Adapter(clients)
    tags = {'autoalarm:target': 'Prometheus'}

    assert wants_prometheus(adapter, tags, PROMETHEUS_SETTINGS)
    assert not wants_prometheus(adapter, tags, Settings())
    assert not wants_prometheus(adapter, {}, PROMETHEUS_SETTINGS)
    assert not wants_prometheus(SqsAdapter(clients), tags, PROMETHEUS_SETTINGS)


def test_examine_record_returns_pending_work(clients, ec2, sleep):
    instance_id = launch(ec2, {'autoalarm:cpu': '50/60'})

    item = examine_record(record('m1', tag_change(instance_id)), clients, Settings(), sleep=sleep)

    assert item.message_id == 'm1'
    assert item.identity.service_identifier == instance_id
    assert item.tags == {'autoalarm:cpu': '50/60'}
    assert not item.prometheus


def test_handler_entry_point(clients, ec2, cloudwatch, monkeypatch):
    monkeypatch.setattr(handler_module, '_clients', clients)
    monkeypatch.delenv('PROMETHEUS_WORKSPACE_ID', raising=False)
    instance_id = launch(ec2)

    response = handler_module.handler({'Records': [record('m1', tag_change(instance_id))]}, None)

    assert response == {'batchItemFailures': []}
    assert len(alarm_names(cloudwatch)) == 6
