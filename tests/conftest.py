import json
from unittest.mock import MagicMock

import pytest

from deploy_opsworks import Deployer, Settings

STACK_NAME = "myapp-staging"
APP_NAME = "myapp"

CUSTOM_JSON = {
    "custom_env": {
        "myapp": {
            "DATABASE_URL": "postgres://db.internal/myapp",
            "SECRET_KEY_BASE": "abc123",
        },
        "worker": {"QUEUE": "default"},
    }
}


def stack_record(name=STACK_NAME, stack_id="stack-1", custom_json=CUSTOM_JSON):
    record = {"Name": name, "StackId": stack_id}
    if custom_json is not None:
        record["CustomJson"] = (
            custom_json if isinstance(custom_json, str) else json.dumps(custom_json)
        )
    return record


def app_record(name=APP_NAME, app_id="app-1", rails_env="staging"):
    return {"Name": name, "AppId": app_id, "Attributes": {"RailsEnv": rails_env}}


def layer_record(shortname, layer_id=None):
    return {"Shortname": shortname, "LayerId": layer_id or f"layer-{shortname}"}


def instance_record(instance_id, status="online", **addresses):
    return {"InstanceId": instance_id, "Status": status, **addresses}


class FakeClock:
    """Monotonic clock that only moves when ``sleep`` is called."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def make_client():
    """Build a fake OpsWorks client from plain records."""

    def _make(stacks=None, apps=None, layers=None, instances=None):
        instances = instances or {}
        client = MagicMock()
        client.describe_stacks.return_value = {
            "Stacks": [stack_record()] if stacks is None else stacks
        }
        client.describe_apps.return_value = {
            "Apps": [app_record()] if apps is None else apps
        }
        client.describe_layers.return_value = {"Layers": layers or []}
        client.describe_instances.side_effect = lambda **query: {
            "Instances": instances.get(query.get("LayerId"), [])
        }
        client.create_deployment.return_value = {"DeploymentId": "deployment-1"}
        return client

    return _make


@pytest.fixture
def settings():
    return Settings(app_base_name=APP_NAME, app_layers=["rails-app", "sidekiq"])


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_deployer(settings, clock):
    def _make(client):
        return Deployer(settings=settings, client=client, sleep=clock.sleep, clock=clock)

    return _make
