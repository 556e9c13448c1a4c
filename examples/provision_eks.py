"""Example: provision a small EKS-style stack against an in-memory cloud.

Declares a network, a cluster module (cluster plus worker node group), a
settle wait, a kubeconfig command hook and two chart releases (jupyterhub and
vault). The releases read the cluster endpoint, token and CA certificate that
only exist once the cluster has been created.

The stack is applied, applied again (a no-op), and destroyed.
"""

import argparse
import base64
import itertools
import sys

from cairn import (
    ApplyResult,
    Declaration,
    Driver,
    DriverRegistry,
    Module,
    Orchestrator,
    Resource,
    Settings,
    Variable,
    cel,
    ref,
)
from cairn.errors import PermanentDriverError, ResourceNotFound
from cairn.logging import configure_logging
from cairn.operations import OperationKind
from cairn.store.memory import MemoryStore

FAKE_CA = base64.b64encode(b"-----BEGIN CERTIFICATE-----\nMIIC...\n").decode()


class FakeCloud:
    """Remote objects by id, plus a count of write calls."""

    def __init__(self):
        self.objects = {}
        self.writes = 0
        self._ids = itertools.count(1)

    def new_id(self, prefix):
        return f"{prefix}-{next(self._ids):04d}"


class FakeDriver(Driver):
    """Driver for one kind of fake cloud object."""

    def __init__(self, kind, cloud, prefix, produce=None, natural_key=None, fail=False):
        self.kind = kind
        self.cloud = cloud
        self.prefix = prefix
        self.produce = produce or (lambda desired, remote_id: {})
        self.natural_key = natural_key
        self.fail = fail

    def identify(self, desired):
        if self.natural_key is None:
            return None
        return f"{self.prefix}/{desired[self.natural_key]}"

    def apply(self, desired, previous, config):
        if self.fail:
            raise PermanentDriverError(f"{self.kind}: AccessDenied in {config.region}")
        remote_id = (
            previous.remote_id
            if previous is not None and previous.remote_id
            else self.identify(desired) or self.cloud.new_id(self.prefix)
        )
        snapshot = {"id": remote_id, **desired, **self.produce(desired, remote_id)}
        self.cloud.objects[remote_id] = snapshot
        self.cloud.writes += 1
        return ApplyResult(snapshot=snapshot, remote_id=remote_id)

    def read(self, remote_id, config):
        if remote_id not in self.cloud.objects:
            raise ResourceNotFound(remote_id)
        return dict(self.cloud.objects[remote_id])

    def delete(self, remote_id, previous, config):
        self.cloud.objects.pop(remote_id, None)
        self.cloud.writes += 1


def build_registry(cloud, fail_cluster):
    registry = DriverRegistry()
    registry.register(
        FakeDriver(
            "network",
            cloud,
            "vpc",
            produce=lambda d, rid: {"subnet_ids": [f"{rid}-subnet-{az}" for az in d["azs"]]},
        )
    )
    registry.register(
        FakeDriver(
            "cluster",
            cloud,
            "eks",
            natural_key="name",
            fail=fail_cluster,
            produce=lambda d, rid: {
                "endpoint": f"https://{d['name']}.eks.example.com",
                "certificate_authority": FAKE_CA,
                "token": f"k8s-aws-v1.{d['name']}",
            },
        )
    )
    registry.register(FakeDriver("node_group", cloud, "ng"))
    registry.register(
        FakeDriver("helm_release", cloud, "release", natural_key="name")
    )
    return registry


def build_declaration():
    kubeconfig_check = (
        "import os, sys; "
        "sys.exit(0 if os.environ['KUBE_ENDPOINT'].startswith('https://') else 1)"
    )
    return Declaration(
        variables={
            "cluster_name": Variable(default="analytics"),
            "cidr": Variable(default="10.0.0.0/16"),
            "workers": Variable(default=2),
        },
        resources=[
            Resource("net", "network", {"cidr": cel("var.cidr"), "azs": ["a", "b", "c"]}),
            Module(
                name="eks",
                inputs={
                    "name": cel("var.cluster_name"),
                    "subnets": ref("net.subnet_ids"),
                    "workers": cel("var.workers"),
                },
                resources=[
                    Resource(
                        "cluster",
                        "cluster",
                        {"name": cel("var.name"), "subnet_ids": cel("var.subnets")},
                    ),
                    Resource(
                        "workers",
                        "node_group",
                        {"cluster": ref("cluster.name"), "desired_size": cel("var.workers")},
                    ),
                ],
                outputs={
                    "endpoint": ref("cluster.endpoint"),
                    "token": ref("cluster.token"),
                    "ca": cel("base64decode(cluster.certificate_authority)"),
                },
            ),
            Resource("settle", "wait", {"duration": "100ms"}, depends_on=["eks"]),
            Resource(
                "kubeconfig",
                "command",
                {
                    "command": [sys.executable, "-c", kubeconfig_check],
                    "environment": {
                        "KUBE_ENDPOINT": ref("eks.endpoint"),
                        "KUBE_TOKEN": ref("eks.token"),
                    },
                },
                depends_on=["settle"],
            ),
            Resource(
                "hub",
                "helm_release",
                {
                    "name": "jupyterhub",
                    "namespace": "hub",
                    "values": {"proxy": {"host": "${eks.endpoint}"}},
                },
                depends_on=["kubeconfig"],
            ),
            Resource(
                "vault",
                "helm_release",
                {"name": "vault", "namespace": "vault", "ca": ref("eks.ca")},
                depends_on=["kubeconfig"],
            ),
        ],
    )


def main():
    parser = argparse.ArgumentParser(description="Provision an EKS-style stack in memory")
    parser.add_argument(
        "--cluster-name",
        type=str,
        default="analytics",
        help="Name of the cluster (default: analytics)",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=2,
        help="Desired size of the worker node group (default: 2)",
    )
    parser.add_argument(
        "--fail-cluster",
        action="store_true",
        help="Make the cluster driver reject every apply",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="WARNING",
        help="Log level (default: WARNING)",
    )
    args = parser.parse_args()

    settings = Settings(
        max_concurrency=4, backoff_max=1, region="eu-west-1", log_level=args.log_level
    )
    configure_logging(settings.log_level)

    cloud = FakeCloud()
    registry = build_registry(cloud, args.fail_cluster)
    store = MemoryStore()

    def orchestrator():
        return Orchestrator(
            build_declaration(),
            variables={"cluster_name": args.cluster_name, "workers": args.workers},
            registry=registry,
            store=store,
            settings=settings,
        )

    plan = orchestrator().plan()
    print("Plan: " + ", ".join(f"{kind}={count}" for kind, count in plan.counts().items() if count))

    report = orchestrator().apply()
    if not report.success:
        print(f"✗ Failed: {', '.join(sorted(report.failed))}")
        for name, error in sorted(report.failed.items()):
            print(f"  {name}: {error}")
        print(f"  Skipped: {', '.join(sorted(report.skipped))}")
        print(f"  Applied: {', '.join(report.applied)}")
        sys.exit(report.exit_code)

    print(f"✓ Applied {len(report.applied)} resources in dependency order")
    print(f"  Order: {' -> '.join(report.applied)}")
    print(f"  Cluster endpoint: {report.outputs('eks')['endpoint']}")
    print(f"  Worker group size: {report.outputs('eks.workers')['desired_size']}")
    print(f"  Vault CA starts with: {report.outputs('vault')['ca'].splitlines()[0]}")

    writes = cloud.writes
    again = orchestrator().apply()
    assert again.success
    print(
        f"✓ Re-apply is a no-op: {len(again.operations(OperationKind.NOOP))} unchanged, "
        f"{cloud.writes - writes} driver writes"
    )

    destroyed = orchestrator().destroy()
    assert destroyed.success
    print(f"✓ Destroyed {len(destroyed.deleted)} resources, {len(cloud.objects)} remote objects left")


if __name__ == "__main__":
    main()
