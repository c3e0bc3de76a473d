"""Fixtures shared by the test suite. AWS APIs moto supports well (CloudWatch, EC2, SQS) are mocked with moto; Managed
Prometheus is replaced by a small in-memory fake."""

import boto3
import os
import pytest

from autoalarm import AwsClients, Dimension, MetricAlarmConfig, ResourceIdentity
from autoalarm.metrics import alarm_defaults
from botocore.exceptions import ClientError
from moto import mock_aws

REGION = 'us-east-1'


@pytest.fixture
def aws_credentials():
    """Set up mock AWS credentials for moto."""
    os.environ['AWS_ACCESS_KEY_ID'] = 'testing'
    os.environ['AWS_SECRET_ACCESS_KEY'] = 'testing'
    os.environ['AWS_SECURITY_TOKEN'] = 'testing'
    os.environ['AWS_SESSION_TOKEN'] = 'testing'
    os.environ['AWS_DEFAULT_REGION'] = REGION


@pytest.fixture
def clients(aws_credentials):
    """An AwsClients building moto-backed clients."""
    with mock_aws():
        yield AwsClients(region_name=REGION, session=boto3.session.Session(region_name=REGION))


@pytest.fixture
def cloudwatch(clients):
    return clients.get('cloudwatch')


@pytest.fixture
def sleeps():
    """Records every sleep instead of sleeping."""
    return []


@pytest.fixture
def sleep(sleeps):
    return sleeps.append


class FakeClients:
    """Stands in for AwsClients, handing out whatever clients a test provides."""

    def __init__(self, **clients):
        self.clients = clients
        self.region_name = REGION

    def get(self, service: str, region_name: str = None):
        return self.clients[service]


def client_error(code: str, operation: str = 'Operation') -> ClientError:
    return ClientError({'Error': {'Code': code, 'Message': code}}, operation)


class FakePaginator:
    def __init__(self, pages):
        self.pages = pages

    def paginate(self, **kwargs):
        return iter(self.pages)


class FakeAmpClient:
    """Just enough of the ``amp`` client for the rule reconciliation code, holding namespaces in memory."""

    def __init__(self, status: str = 'ACTIVE', exists: bool = True):
        self.status = status
        self.exists = exists
        #: Raw namespace documents keyed by name
        self.namespaces: dict[str, bytes] = {}
        self.calls: list[str] = []
        #: Error codes to raise from the next calls of the named operations
        self.failures: dict[str, list[str]] = {}

    def _call(self, operation: str):
        self.calls.append(operation)
        pending = self.failures.get(operation)
        if pending:
            raise client_error(pending.pop(0), operation)

    def describe_workspace(self, workspaceId):
        self._call('describe_workspace')
        if not self.exists:
            raise client_error('ResourceNotFoundException', 'DescribeWorkspace')
        return {'workspace': {'workspaceId': workspaceId, 'status': {'statusCode': self.status}}}

    def get_paginator(self, operation):
        self._call(operation)
        return FakePaginator([{'ruleGroupsNamespaces': [{'name': name} for name in self.namespaces]}])

    def describe_rule_groups_namespace(self, workspaceId, name):
        self._call('describe_rule_groups_namespace')
        if name not in self.namespaces:
            raise client_error('ResourceNotFoundException', 'DescribeRuleGroupsNamespace')
        return {'ruleGroupsNamespace': {'name': name, 'data': self.namespaces[name]}}

    def create_rule_groups_namespace(self, workspaceId, name, data):
        self._call('create_rule_groups_namespace')
        if name in self.namespaces:
            raise client_error('ConflictException', 'CreateRuleGroupsNamespace')
        self.namespaces[name] = data

    def put_rule_groups_namespace(self, workspaceId, name, data):
        self._call('put_rule_groups_namespace')
        if name not in self.namespaces:
            raise client_error('ResourceNotFoundException', 'PutRuleGroupsNamespace')
        self.namespaces[name] = data

    def delete_rule_groups_namespace(self, workspaceId, name):
        self._call('delete_rule_groups_namespace')
        if name not in self.namespaces:
            raise client_error('ResourceNotFoundException', 'DeleteRuleGroupsNamespace')
        del self.namespaces[name]


@pytest.fixture
def amp():
    return FakeAmpClient()


def make_config(tag_key: str = 'cpu', **kwargs) -> MetricAlarmConfig:
    """Builds a metric config, defaulting to a CPU-like metric created by default."""

    values = {
        'tag_key': tag_key,
        'metric_name': 'CPUUtilization',
        'metric_namespace': 'AWS/EC2',
        'default_create': True,
        'anomaly': False,
        'defaults': alarm_defaults(warning_threshold=80, critical_threshold=95, period=300),
    }
    values.update(kwargs)
    return MetricAlarmConfig(**values)


def make_identity(service_identifier: str = 'i-0123456789abcdef0', **kwargs) -> ResourceIdentity:
    values = {
        'service': 'EC2',
        'service_identifier': service_identifier,
        'dimensions': [Dimension('InstanceId', service_identifier)],
    }
    values.update(kwargs)
    return ResourceIdentity(**values)


def linux_image_id(ec2) -> str:
    """Finds one of moto's Linux AMIs. Which image moto lists first varies between releases."""

    for image in ec2.describe_images(Owners=['amazon'])['Images']:
        platform = f"{image.get('Platform', '')} {image.get('PlatformDetails', '')}"
        if 'windows' not in platform.lower():
            return image['ImageId']
    raise LookupError('moto offers no Linux images')
