import json
import pytest

from autoalarm import realarm
from autoalarm.realarm import (
    build_message_entries,
    consume,
    find_alarms_to_reset,
    has_autoscaling_action,
    produce,
)
from tests.conftest import FakeClients, client_error
from unittest.mock import MagicMock

ACCOUNT = '123456789012'
SCALING_POLICY = (
    f'arn:aws:autoscaling:us-east-1:{ACCOUNT}:scalingPolicy:1a2b3c4d:autoScalingGroupName/web:policyName/scale-out'
)


def put_alarm(cloudwatch, name: str, state: str = 'ALARM', **kwargs):
    cloudwatch.put_metric_alarm(
        AlarmName=name,
        MetricName='CPUUtilization',
        Namespace='AWS/EC2',
        Period=60,
        EvaluationPeriods=1,
        Threshold=90,
        ComparisonOperator='GreaterThanThreshold',
        Statistic='Average',
        **kwargs,
    )
    cloudwatch.set_alarm_state(AlarmName=name, StateValue=state, StateReason='test')


def state_of(cloudwatch, name: str) -> str:
    return cloudwatch.describe_alarms(AlarmNames=[name])['MetricAlarms'][0]['StateValue']


@pytest.fixture
def queue_url(clients):
    sqs = clients.get('sqs')
    return sqs.create_queue(QueueName='AutoAlarm-ReAlarm.fifo', Attributes={'FifoQueue': 'true'})['QueueUrl']


def test_has_autoscaling_action():
    assert has_autoscaling_action({'AlarmActions': [SCALING_POLICY]})
    assert not has_autoscaling_action({'AlarmActions': [f'arn:aws:sns:us-east-1:{ACCOUNT}:alerts']})
    assert not has_autoscaling_action({})


def test_only_resettable_alarms_are_found(cloudwatch):
    put_alarm(cloudwatch, 'firing')
    put_alarm(cloudwatch, 'calm', state='OK')
    put_alarm(cloudwatch, 'scaling', AlarmActions=[SCALING_POLICY])
    put_alarm(cloudwatch, 'opted-out', Tags=[{'Key': 'autoalarm:re-alarm-enabled', 'Value': 'false'}])
    put_alarm(cloudwatch, 'opted-in', Tags=[{'Key': 'autoalarm:re-alarm-enabled', 'Value': 'true'}])

    alarms = find_alarms_to_reset(cloudwatch)

    assert sorted(alarm['AlarmName'] for alarm in alarms) == ['firing', 'opted-in']


def test_message_entries():
    alarms = [
        {'AlarmName': 'a', 'AlarmArn': 'arn:a', 'StateUpdatedTimestamp': '2024-01-01T00:00:00Z'},
        {'AlarmName': 'b', 'AlarmArn': 'arn:b', 'StateUpdatedTimestamp': '2024-01-01T00:00:00Z'},
    ]

    entries = build_message_entries(alarms)

    assert [entry['Id'] for entry in entries] == ['0', '1']
    assert json.loads(entries[0]['MessageBody']) == {'AlarmName': 'a', 'AlarmArn': 'arn:a'}
    assert {entry['MessageGroupId'] for entry in entries} == {'ReAlarm'}
    assert entries[0]['MessageDeduplicationId'] != entries[1]['MessageDeduplicationId']


def test_deduplication_follows_state_changes():
    first = build_message_entries([{'AlarmName': 'a', 'StateUpdatedTimestamp': 1}])[0]
    again = build_message_entries([{'AlarmName': 'a', 'StateUpdatedTimestamp': 1}])[0]
    later = build_message_entries([{'AlarmName': 'a', 'StateUpdatedTimestamp': 2}])[0]

    assert first['MessageDeduplicationId'] == again['MessageDeduplicationId']
    assert first['MessageDeduplicationId'] != later['MessageDeduplicationId']


def test_produce_queues_alarms(clients, cloudwatch, queue_url, sleep):
    put_alarm(cloudwatch, 'first')
    put_alarm(cloudwatch, 'second')

    result = produce(clients, queue_url, sleep=sleep)

    assert result == {'queued': 2, 'failed': 0}
    messages = clients.get('sqs').receive_message(QueueUrl=queue_url, MaxNumberOfMessages=10)['Messages']
    assert sorted(json.loads(message['Body'])['AlarmName'] for message in messages) == ['first', 'second']


def test_produce_with_nothing_to_do(clients, queue_url, sleep):
    assert produce(clients, queue_url, sleep=sleep) == {'queued': 0, 'failed': 0}


def test_consume_resets_alarms(clients, cloudwatch):
    put_alarm(cloudwatch, 'firing')
    records = [{'messageId': 'm1', 'body': json.dumps({'AlarmName': 'firing'})}]

    response = consume(records, clients)

    assert response == {'batchItemFailures': []}
    assert state_of(cloudwatch, 'firing') == 'OK'


def test_consume_reports_bad_records():
    cloudwatch = MagicMock()
    cloudwatch.set_alarm_state.side_effect = [client_error('ResourceNotFound', 'SetAlarmState'), None]
    records = [
        {'messageId': 'missing', 'body': json.dumps({'AlarmName': 'gone'})},
        {'messageId': 'garbled', 'body': 'not json'},
        {'messageId': 'nameless', 'body': json.dumps({'AlarmArn': 'arn'})},
        {'messageId': 'fine', 'body': json.dumps({'AlarmName': 'here'})},
    ]

    response = consume(records, FakeClients(cloudwatch=cloudwatch))

    assert [failure['itemIdentifier'] for failure in response['batchItemFailures']] == [
        'missing',
        'garbled',
        'nameless',
    ]
    cloudwatch.set_alarm_state.assert_called_with(
        AlarmName='here', StateValue='OK', StateReason='Resetting state from ReAlarm'
    )


def test_producer_needs_a_queue(monkeypatch):
    monkeypatch.delenv('REALARM_QUEUE_URL', raising=False)

    with pytest.raises(ValueError):
        realarm.producer_handler({}, None)


def test_consumer_handler(clients, cloudwatch, monkeypatch):
    monkeypatch.setattr(realarm, '_clients', clients)
    put_alarm(cloudwatch, 'firing')

    response = realarm.consumer_handler(
        {'Records': [{'messageId': 'm1', 'body': json.dumps({'AlarmName': 'firing'})}]}, None
    )

    assert response == {'batchItemFailures': []}
    assert state_of(cloudwatch, 'firing') == 'OK'
