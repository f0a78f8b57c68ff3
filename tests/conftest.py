"""Pytest configuration and shared fixtures."""

import pytest
from fakes import make_executors, write_manifest
from hypothesis import Verbosity, settings

from kubeconverge.config import ReconcilerSettings
from kubeconverge.lease import LeaseManager
from kubeconverge.manifest import load_manifest
from kubeconverge.reconciler import Reconciler

# Configure Hypothesis for property-based testing
settings.register_profile("default", max_examples=100, verbosity=Verbosity.normal)
settings.register_profile("ci", max_examples=1000, verbosity=Verbosity.verbose)
settings.register_profile("dev", max_examples=10, verbosity=Verbosity.verbose)

# Load the default profile
settings.load_profile("default")


@pytest.fixture
def sample_manifest_data():
    """Manifest documents for a Jenkins + Ansible lab cluster."""
    return [
        {
            "kind": "Topology",
            "name": "jenkins-lab",
            "nodes": [
                {"name": "master", "role": "control-plane"},
                {"name": "worker-1", "role": "worker", "labels": {"app-tier": "ci"}},
                {
                    "name": "worker-2",
                    "role": "worker",
                    "labels": {"app-tier": "automation"},
                    "taints": [{"key": "dedicated", "value": "ansible", "effect": "NoSchedule"}],
                },
            ],
            "bootstrap": {
                "node": "master",
                "playbook": "playbooks/kubeadm_init.yml",
                "join_playbook": "playbooks/kubeadm_join.yml",
                "inventory": "inventory/hosts.yml",
            },
        },
        {
            "kind": "Image",
            "name": "jenkins",
            "repository": "registry.example.com/lab/jenkins",
            "tag": "2.401",
            "context": "images/jenkins",
        },
        {
            "kind": "Image",
            "name": "ansible",
            "repository": "registry.example.com/lab/ansible",
            "tag": "8.0",
            "context": "images/ansible",
        },
        {
            "kind": "Workload",
            "name": "jenkins",
            "image": "jenkins",
            "replicas": 1,
            "resources": {"requests": {"cpu": "500m", "memory": "1Gi"}},
            "placement": {"node_selector": {"app-tier": "ci"}},
            "exposure": {
                "type": "NodePort",
                "ports": [
                    {"name": "http", "port": 8080, "node_port": 30080},
                    {"name": "agent", "port": 50000},
                ],
            },
        },
        {
            "kind": "Workload",
            "name": "ansible",
            "image": "ansible",
            "replicas": 1,
            "placement": {
                "node_selector": {"app-tier": "automation"},
                "tolerations": [
                    {"key": "dedicated", "value": "ansible", "effect": "NoSchedule"}
                ],
            },
        },
    ]


@pytest.fixture
def manifest_dir(tmp_path, sample_manifest_data):
    """A manifest directory with image build contexts in place."""
    for name in ("jenkins", "ansible"):
        context = tmp_path / "images" / name
        context.mkdir(parents=True)
        (context / "Dockerfile").write_text(f"FROM {name}:latest\n")
    write_manifest(tmp_path, sample_manifest_data)
    return tmp_path


@pytest.fixture
def graph(manifest_dir):
    return load_manifest(manifest_dir)


@pytest.fixture
def fast_settings():
    """Settings with no backoff and quick verification."""
    return ReconcilerSettings(
        max_attempts=3,
        backoff_initial=0,
        backoff_max=0,
        poll_interval=0.01,
        verify_timeout=2,
        stable_polls=1,
    )


@pytest.fixture
def fakes():
    """(executors, cluster, images) backed by in-memory fakes."""
    return make_executors()


@pytest.fixture
def reconciler(fakes, fast_settings):
    executors, _, _ = fakes
    return Reconciler(executors, fast_settings, leases=LeaseManager())
