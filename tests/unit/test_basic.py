"""Basic tests to verify project setup."""


def test_import_kubeconverge():
    """Test that kubeconverge package can be imported."""
    import kubeconverge

    assert kubeconverge.__version__ == "0.1.0"


def test_import_cli():
    """Test that CLI module can be imported."""
    from kubeconverge import cli

    assert cli.app is not None


def test_import_models():
    """Test that the models package re-exports the core types."""
    from kubeconverge import models

    assert models.WorkloadSpec is not None
    assert models.ClusterTopology is not None
    assert models.PassReport is not None


def test_import_executors():
    """Test that the executor interfaces can be imported without a cluster."""
    from kubeconverge.executors import ClusterExecutor, Executors, build_executors

    assert ClusterExecutor is not None
    assert Executors is not None
    assert callable(build_executors)
