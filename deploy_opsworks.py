#!/usr/bin/env python3
"""Deploy apps to AWS OpsWorks stacks.

Prerequisites: AWS credentials with OpsWorks access, an app layer with online instances.

Usage: uv run deploy-opsworks <command> [options]

Examples:
    uv run deploy-opsworks deploy myapp-staging --migrate
    uv run deploy-opsworks recipe myapp-staging deploy::assets --layer rails-app
    uv run deploy-opsworks config myapp-staging --export
    uv run deploy-opsworks instance ssh myapp-staging --command "tail -f log/production.log"
"""

import json
import os
import shlex
import subprocess
import sys
import time
from collections.abc import Callable, Iterable
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import TypeVar

import boto3
import cyclopts
from botocore.exceptions import BotoCoreError, ClientError
from dotenv import load_dotenv
from fabric import Connection
from rich import print
from rich.console import Console

app = cyclopts.App(
    name="deploy-opsworks", help="Deploy apps to AWS OpsWorks stacks", sort_key=None
)

instance_app = cyclopts.App(
    name="instance", help="Inspect and connect to stack instances", sort_key=1
)

app.command(instance_app)

OPSWORKS_REGION = "us-east-1"
DEFAULT_APP_LAYERS = ["rails-app"]
MEMCACHED_LAYER = "memcached"
SSH_KEY_ENV = "AWS_PUBLICKEY"
SSH_USER_ENV = "AWS_USER"

console = Console()
err_console = Console(stderr=True, highlight=False)

T = TypeVar("T")


def log(msg: str):
    print(f"[green][INFO][/green] {msg}")


def warn(msg: str):
    print(f"[yellow][WARN][/yellow] {msg}")


def error(msg: str):
    print(f"[red][ERROR][/red] {msg}")
    sys.exit(1)


class DeployError(Exception):
    """Base class for every failure raised by this tool."""


class ConfigurationError(DeployError, ValueError):
    pass


class NotFoundError(DeployError, LookupError):
    pass


class ConfigNotFoundError(DeployError, LookupError):
    pass


class ValidationError(DeployError, ValueError):
    pass


class NoInstancesError(DeployError):
    pass


class DeploymentFailedError(DeployError):
    def __init__(self, status: str):
        self.status = status
        super().__init__(f"Deploy failed (status: {status})!")


class DeploymentTimeoutError(DeployError, TimeoutError):
    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(
            f"Timed out waiting for deploy to succeed after {timeout} seconds."
        )


@contextmanager
def reported_errors():
    """Turns tool and AWS failures into an ``[ERROR]`` line and exit status 1."""
    try:
        yield
    except (DeployError, ClientError, BotoCoreError) as e:
        error(str(e))


@dataclass
class Settings:
    """Deployment settings loaded from the environment."""

    app_base_name: str
    app_layers: list[str] = field(default_factory=lambda: list(DEFAULT_APP_LAYERS))
    aws_access_key_id: str | None = None
    aws_secret_access_key: str | None = None


def get_settings() -> Settings:
    """Reads a local ``.env`` first, then the process environment.

    - DEPLOY_APP_BASE_NAME: app name inside the stack (default: current directory name)
    - DEPLOY_APP_LAYERS: comma separated layer short names to deploy to
    - AWS_ACCESS_KEY_ID / AWS_SECRET_ACCESS_KEY: OpsWorks credentials
    """
    load_dotenv()

    layers = os.getenv("DEPLOY_APP_LAYERS")
    app_layers = (
        [name.strip() for name in layers.split(",") if name.strip()]
        if layers
        else list(DEFAULT_APP_LAYERS)
    )
    return Settings(
        app_base_name=os.getenv("DEPLOY_APP_BASE_NAME") or Path.cwd().name,
        app_layers=app_layers,
        aws_access_key_id=os.getenv("AWS_ACCESS_KEY_ID"),
        aws_secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY"),
    )


def get_client(access_id: str | None, secret_access_key: str | None, region: str = OPSWORKS_REGION):
    """No request is sent until the first API call."""
    if not access_id or not secret_access_key:
        raise ConfigurationError("You must specify an AWS access key id and secret access key!")
    return boto3.client(
        "opsworks",
        aws_access_key_id=access_id,
        aws_secret_access_key=secret_access_key,
        region_name=region,
    )


def find_first(items: Iterable[T], predicate: Callable[[T], bool]) -> T | None:
    return next((item for item in items if predicate(item)), None)


def get_stack(client, stack_name: str) -> dict:
    stacks = client.describe_stacks()["Stacks"]
    stack = find_first(stacks, lambda s: s["Name"] == stack_name)
    if stack is None:
        raise NotFoundError(f"No {stack_name} stack found!")
    return stack


def get_app(client, stack: dict, app_name: str) -> dict | None:
    """:return: app record, or None when the stack has no app by that name"""
    apps = client.describe_apps(StackId=stack["StackId"])["Apps"]
    return find_first(apps, lambda a: a["Name"] == app_name)


def require_app(client, stack: dict, app_name: str) -> dict:
    app_record = get_app(client, stack, app_name)
    if app_record is None:
        raise NotFoundError(f"No {app_name} app found in {stack['Name']} stack!")
    return app_record


def get_layers(client, stack: dict, role_names: Iterable[str]) -> list[dict]:
    role_names = set(role_names)
    layers = client.describe_layers(StackId=stack["StackId"])["Layers"]
    return [layer for layer in layers if layer["Shortname"] in role_names]


def get_online_instances(client, **query) -> list[dict]:
    """:param query: ``describe_instances`` filter, e.g. ``LayerId=...``"""
    instances = client.describe_instances(**query)["Instances"]
    return [i for i in instances if i.get("Status") == "online"]


def get_online_instance_ids(client, **query) -> list[str]:
    return [i["InstanceId"] for i in get_online_instances(client, **query)]


def get_instance_endpoint(instance: dict) -> str | None:
    # public_dns is not always set; elastic IP next, private DNS as a last resort
    return (
        instance.get("PublicDns")
        or instance.get("ElasticIp")
        or instance.get("PrivateDns")
        or None
    )


def get_layer_instances(client, layers: list[dict]) -> list[dict]:
    instances = []
    for layer in layers:
        instances.extend(get_online_instances(client, LayerId=layer["LayerId"]))
    return instances


def ssh_args(endpoint: str, command: str | None = None) -> list[str]:
    """
    :param endpoint: host name or IP of the instance
    :param command: remote command as a single argument, omitted for an interactive login
    """
    args = ["ssh", "-t", "-o", "UserKnownHostsFile=/dev/null", "-o", "StrictHostKeyChecking=no"]
    key_path = os.environ.get(SSH_KEY_ENV)
    if key_path:
        args.extend(["-i", key_path])
    user = os.environ.get(SSH_USER_ENV)
    if user:
        args.extend(["-l", user])
    args.append(endpoint)
    if command:
        args.append(command)
    return args


def ssh_command_to(endpoint: str, command: str | None = None) -> str:
    """Printable form of ``ssh_args``; ``command`` is appended as given."""
    return " ".join(ssh_args(endpoint, command))


def ssh_connection(endpoint: str) -> Connection:
    key_path = os.environ.get(SSH_KEY_ENV)
    connect_kwargs = {"key_filename": key_path} if key_path else {"look_for_keys": True}
    return Connection(
        endpoint,
        user=os.environ.get(SSH_USER_ENV) or None,
        connect_kwargs=connect_kwargs,
    )


class EnvironmentCache:
    """Resolved app environments, kept for the life of the process.

    Entries are keyed by ``(stack_name, app_name)`` and never invalidated.
    """

    def __init__(self):
        self._entries: dict[tuple[str, str], dict[str, str]] = {}

    def __contains__(self, key: tuple[str, str]) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get_or_load(
        self, stack_name: str, app_name: str, loader: Callable[[], dict[str, str]]
    ) -> dict[str, str]:
        key = (stack_name, app_name)
        if key not in self._entries:
            self._entries[key] = loader()
        return self._entries[key]


def resolve_environment(
    client, stack_name: str, app_name: str, cache: EnvironmentCache
) -> dict[str, str]:
    return cache.get_or_load(
        stack_name, app_name, lambda: load_environment(client, stack_name, app_name)
    )


def load_environment(client, stack_name: str, app_name: str) -> dict[str, str]:
    """Builds the runtime environment of an app from its stack.

    Starts from ``custom_env.<app_name>`` in the stack's custom JSON, then adds
    ``RAILS_ENV`` and, when a memcached instance is online, ``MEMCACHE_SERVERS``
    and ``MEMCACHE_SERVERS_PUBLIC``.
    """
    stack = get_stack(client, stack_name)
    try:
        custom = json.loads(stack.get("CustomJson") or "{}")
    except json.JSONDecodeError as e:
        raise ConfigNotFoundError(
            f"Custom JSON of {stack_name} stack is not valid JSON: {e}"
        ) from e
    custom_env = custom.get("custom_env") if isinstance(custom, dict) else None
    config = custom_env.get(app_name) if isinstance(custom_env, dict) else None
    if not isinstance(config, dict):
        raise ConfigNotFoundError(
            f"No custom_env config for {app_name} found in {stack_name} stack!"
        )

    # Custom JSON never carries RAILS_ENV, the app attributes do
    app_record = require_app(client, stack, app_name)
    config["RAILS_ENV"] = app_record.get("Attributes", {}).get("RailsEnv")

    memcached_layer = next(iter(get_layers(client, stack, [MEMCACHED_LAYER])), None)
    if memcached_layer:
        memcached_instance = next(
            iter(get_online_instances(client, LayerId=memcached_layer["LayerId"])), None
        )
        if memcached_instance:
            config["MEMCACHE_SERVERS"] = memcached_instance.get("PrivateIp")
            config["MEMCACHE_SERVERS_PUBLIC"] = get_instance_endpoint(memcached_instance)

    return config


class Deployer:
    TIMEOUT = 15 * 60
    POLL_INTERVAL = 10

    def __init__(
        self,
        access_id: str | None = None,
        secret_access_key: str | None = None,
        *,
        settings: Settings | None = None,
        client=None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        :param client: OpsWorks client to use instead of building one from the credentials
        :param sleep: called between status polls
        :param clock: monotonic seconds, used for the wait deadline
        """
        self.client = client or get_client(access_id, secret_access_key)
        self.settings = settings or get_settings()
        self.sleep = sleep
        self.clock = clock

    def _resolve_targets(
        self, stack_name: str, app_name: str, role_names: list[str]
    ) -> tuple[dict, dict, list[str]]:
        stack = get_stack(self.client, stack_name)
        app_record = require_app(self.client, stack, app_name)
        layers = get_layers(self.client, stack, role_names)
        instance_ids = []
        for layer in layers:
            instance_ids += get_online_instance_ids(self.client, LayerId=layer["LayerId"])
        if not instance_ids:
            raise NoInstancesError(
                f"No online instances found in {stack_name} for layers: {', '.join(role_names)}"
            )
        return stack, app_record, instance_ids

    def _create_deployment(
        self, stack: dict, app_record: dict, instance_ids: list[str], command: dict
    ) -> dict:
        log(
            f"Running {command['Name']} for {app_record['Name']} on "
            f"{len(instance_ids)} instance(s) in {stack['Name']}..."
        )
        return self.client.create_deployment(
            StackId=stack["StackId"],
            AppId=app_record["AppId"],
            InstanceIds=instance_ids,
            Command=command,
        )

    def execute_recipe(
        self,
        stack_name: str,
        layer: str | None,
        recipe: str,
        app_name: str | None = None,
    ) -> dict:
        """Runs a single chef recipe on the online instances of ``layer``.

        :param layer: layer short name, or None for the configured app layers
        :return: ``create_deployment`` response with the ``DeploymentId``
        """
        if not recipe:
            raise ValidationError("No recipe provided")
        app_name = app_name or self.settings.app_base_name
        role_names = [layer] if layer else self.settings.app_layers
        stack, app_record, instance_ids = self._resolve_targets(stack_name, app_name, role_names)
        return self._create_deployment(
            stack,
            app_record,
            instance_ids,
            {"Name": "execute_recipes", "Args": {"recipes": [recipe]}},
        )

    def deploy(self, stack_name: str, migrate_db: bool = False, app_name: str | None = None) -> dict:
        app_name = app_name or self.settings.app_base_name
        stack, app_record, instance_ids = self._resolve_targets(
            stack_name, app_name, self.settings.app_layers
        )
        return self._create_deployment(
            stack,
            app_record,
            instance_ids,
            {"Name": "deploy", "Args": {"migrate": [str(bool(migrate_db)).lower()]}},
        )

    def deployment_status(self, deployment: dict) -> str:
        response = self.client.describe_deployments(
            DeploymentIds=[deployment["DeploymentId"]]
        )
        return response["Deployments"][0]["Status"]

    def wait_for_success(self, deployment: dict, timeout: float = TIMEOUT):
        """Polls until the deployment leaves ``running``.

        The deadline is hard: a status fetched after it has passed is ignored.
        """
        deadline = self.clock() + timeout
        status = self.deployment_status(deployment)
        err_console.print("Polling deploy status...")
        while status == "running":
            remaining = deadline - self.clock()
            if remaining <= 0:
                raise DeploymentTimeoutError(timeout)
            self.sleep(min(self.POLL_INTERVAL, remaining))
            if self.clock() >= deadline:
                raise DeploymentTimeoutError(timeout)
            status = self.deployment_status(deployment)
            err_console.print(".", end="")
        if self.clock() >= deadline:
            raise DeploymentTimeoutError(timeout)
        if status != "successful":
            raise DeploymentFailedError(status)
        err_console.print("Success!")


def get_deployer() -> Deployer:
    settings = get_settings()
    return Deployer(
        settings.aws_access_key_id, settings.aws_secret_access_key, settings=settings
    )


@app.command(name="deploy")
def deploy_app(
    stack_name: str,
    *,
    migrate: bool = False,
    app_name: str | None = None,
    no_wait: bool = False,
    timeout: int = Deployer.TIMEOUT,
):
    """Deploy the app to the online instances of the app layers.

    :param stack_name: OpsWorks stack name
    :param migrate: Run database migrations during the deploy
    :param app_name: App name in the stack (default: DEPLOY_APP_BASE_NAME)
    :param no_wait: Return once the deployment is created
    :param timeout: Seconds to wait for the deployment to finish
    """
    with reported_errors():
        deployer = get_deployer()
        deployment = deployer.deploy(stack_name, migrate, app_name)
        log(f"Deployment {deployment['DeploymentId']} created")
        if not no_wait:
            deployer.wait_for_success(deployment, timeout)


@app.command(name="recipe")
def execute_recipe(
    stack_name: str,
    recipe: str,
    *,
    layer: str | None = None,
    app_name: str | None = None,
    no_wait: bool = False,
    timeout: int = Deployer.TIMEOUT,
):
    """Run a single chef recipe on a layer.

    :param stack_name: OpsWorks stack name
    :param recipe: Recipe to run, e.g. deploy::assets
    :param layer: Layer short name (default: DEPLOY_APP_LAYERS)
    :param app_name: App name in the stack (default: DEPLOY_APP_BASE_NAME)
    :param no_wait: Return once the deployment is created
    :param timeout: Seconds to wait for the recipe run to finish
    """
    with reported_errors():
        deployer = get_deployer()
        deployment = deployer.execute_recipe(stack_name, layer, recipe, app_name)
        log(f"Deployment {deployment['DeploymentId']} created")
        if not no_wait:
            deployer.wait_for_success(deployment, timeout)


@app.command(name="config")
def show_config(stack_name: str, *, app_name: str | None = None, export: bool = False):
    """Print the environment an app runs with on a stack.

    :param stack_name: OpsWorks stack name
    :param app_name: App name in the stack (default: DEPLOY_APP_BASE_NAME)
    :param export: Prefix lines with ``export`` for sourcing in a shell
    """
    with reported_errors():
        settings = get_settings()
        client = get_client(settings.aws_access_key_id, settings.aws_secret_access_key)
        config = resolve_environment(
            client, stack_name, app_name or settings.app_base_name, EnvironmentCache()
        )
    prefix = "export " if export else ""
    for key, value in sorted(config.items()):
        if value is None:
            value = ""
        elif not isinstance(value, str):
            value = json.dumps(value)
        console.print(
            f"{prefix}{key}={shlex.quote(value)}", markup=False, highlight=False, soft_wrap=True
        )


def get_target_instances(stack_name: str, layer: str | None) -> list[dict]:
    settings = get_settings()
    client = get_client(settings.aws_access_key_id, settings.aws_secret_access_key)
    stack = get_stack(client, stack_name)
    role_names = [layer] if layer else settings.app_layers
    instances = get_layer_instances(client, get_layers(client, stack, role_names))
    if not instances:
        raise NoInstancesError(
            f"No online instances found in {stack_name} for layers: {', '.join(role_names)}"
        )
    return instances


@instance_app.command(name="list")
def list_instances(stack_name: str, *, layer: str | None = None):
    """List online instances of the app layers.

    :param stack_name: OpsWorks stack name
    :param layer: Layer short name (default: DEPLOY_APP_LAYERS)
    """
    with reported_errors():
        instances = get_target_instances(stack_name, layer)
    for i in instances:
        print(
            f"  {i.get('Hostname', i['InstanceId'])}: "
            f"{get_instance_endpoint(i) or 'N/A'} ({i['InstanceId']})"
        )


@instance_app.command(name="ssh")
def ssh_instance(
    stack_name: str,
    *,
    layer: str | None = None,
    command: str | None = None,
    print_only: bool = False,
):
    """Open an SSH session on the first online instance.

    Uses AWS_PUBLICKEY as the identity file and AWS_USER as the login user when set.

    :param stack_name: OpsWorks stack name
    :param layer: Layer short name (default: DEPLOY_APP_LAYERS)
    :param command: Run this command instead of a login shell
    :param print_only: Print the ssh command without running it
    """
    with reported_errors():
        instances = get_target_instances(stack_name, layer)
    endpoint = get_instance_endpoint(instances[0])
    if not endpoint:
        error(f"Instance {instances[0]['InstanceId']} has no reachable address")
    if print_only:
        cmd = ssh_command_to(endpoint, shlex.quote(command) if command else None)
        console.print(cmd, markup=False, highlight=False, soft_wrap=True)
        return
    log(f"Connecting to {endpoint}...")
    result = subprocess.run(ssh_args(endpoint, command))
    if result.returncode != 0:
        sys.exit(result.returncode)


@instance_app.command(name="run")
def run_on_instances(stack_name: str, command: str, *, layer: str | None = None):
    """Run a command on every online instance of the layers.

    :param stack_name: OpsWorks stack name
    :param command: Shell command to run
    :param layer: Layer short name (default: DEPLOY_APP_LAYERS)
    """
    with reported_errors():
        instances = get_target_instances(stack_name, layer)
    failures = []
    for instance in instances:
        endpoint = get_instance_endpoint(instance)
        if not endpoint:
            warn(f"Skipping {instance['InstanceId']}: no reachable address")
            failures.append(instance["InstanceId"])
            continue
        log(f"Running on {endpoint}...")
        try:
            with ssh_connection(endpoint) as c:
                result = c.run(command, hide=True, warn=True)
        except Exception as e:
            warn(f"Cannot connect to {endpoint}: {e}")
            failures.append(endpoint)
            continue
        print(result.stdout)
        if result.failed:
            warn(f"Command failed on {endpoint}: {result.stderr}")
            failures.append(endpoint)
    if failures:
        error(f"Command failed on {len(failures)} instance(s): {', '.join(failures)}")


if __name__ == "__main__":
    app()
