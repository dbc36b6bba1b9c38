"""kubeconfigstuff: pull an RKE2/K3s admin kubeconfig over SSH and merge it locally.

Fetches the node's kubeconfig (default ``/etc/rancher/rke2/rke2.yaml``),
renames cluster/context/user to a caller-supplied name, points the server
at the node address, and merges the result into ``~/.kube/config``
(timestamped backup, atomic replace).

Typical usage::

    from kubeconfigstuff import fetch_kubeconfig

    result = fetch_kubeconfig("192.168.1.100", "homelab", ssh_key="~/.ssh/id_ed25519")
    if result.degraded:
        print("merged by concatenation, check ~/.kube/config")

See ``kubeconfigstuff.cli`` for the command line.
"""

import os
import sys
from pathlib import Path

from loguru import logger

__version__ = "0.1.0"

logger_fmt: str = "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | <cyan>{module}</cyan>::<cyan>{extra[classname]}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"


def _loguru_skiplog_filter(record: dict) -> bool:
    return not record.get("extra", {}).get("skiplog", False)


def configure_logging() -> None:
    """(Re)install the single stderr loguru sink, level taken from ``LOGURU_LEVEL``."""
    os.environ["LOGURU_LEVEL"] = os.getenv("LOGURU_LEVEL", "INFO")
    logger.remove()  # remove default-handler
    logger.add(sys.stderr, level=os.getenv("LOGURU_LEVEL"), format=logger_fmt, filter=_loguru_skiplog_filter)  # type: ignore
    logger.configure(extra={"classname": "None", "skiplog": False})


# make {extra[classname]} resolvable even before configure_logging() was called
logger.configure(extra={"classname": "None", "skiplog": False})

from kubeconfigstuff.document import Target, sanitize
from kubeconfigstuff.fetchconfig import FetchOptions, InputValidationError, load_config, validate_cluster_name
from kubeconfigstuff.merge import MergeError, MergeResult, merge_kubeconfigs
from kubeconfigstuff.pipeline import PipelineResult, Stage, run_pipeline
from kubeconfigstuff.remote import DependencyMissingError, RemoteFetchError
from kubeconfigstuff.rewrite import RewriteError, RewriteResult, rewrite_kubeconfig

__all__ = [
    "__version__",
    "configure_logging",
    "fetch_kubeconfig",
    "DependencyMissingError",
    "FetchOptions",
    "InputValidationError",
    "MergeError",
    "MergeResult",
    "PipelineResult",
    "RemoteFetchError",
    "RewriteError",
    "RewriteResult",
    "Stage",
    "Target",
    "load_config",
    "merge_kubeconfigs",
    "rewrite_kubeconfig",
    "run_pipeline",
    "sanitize",
    "validate_cluster_name",
]


def fetch_kubeconfig(
    server_address: str,
    cluster_name: str,
    ssh_user: str | None = None,
    ssh_key: str | Path | None = None,
    ssh_password: str | None = None,
    remote_config_path: str | None = None,
    local_kubeconfig: str | Path | None = None,
    api_port: int | None = None,
    verify: bool | None = None,
) -> PipelineResult:
    """Convenience function: fetch, rewrite, merge and persist in one call.

    Thin wrapper around ``load_config`` + ``run_pipeline``.  ``None``
    arguments fall back to environment variables (``KUBECONFIGSTUFF_*``)
    and then to the model defaults.

    Args:
        server_address: Hostname or IP of the RKE2/K3s server node.
        cluster_name: Name for cluster and context (``[A-Za-z0-9_-]+``).
        ssh_user: SSH login (default: ``root``).
        ssh_key: Private key file passed to ``ssh -i``.
        ssh_password: Password, requires ``sshpass`` on ``PATH``.
        remote_config_path: Kubeconfig location on the node.
        local_kubeconfig: Local kubeconfig to merge into (default: ``~/.kube/config``).
        api_port: Kubernetes API port for the rewritten server URL.
        verify: Query the new context with kubectl after writing.

    Returns:
        The ``PipelineResult`` of the run.

    Raises:
        InputValidationError: Invalid cluster name or options, missing key file.
        DependencyMissingError: ``ssh`` or ``sshpass`` not installed.
        RemoteFetchError: Host unreachable, file missing or empty.
    """
    config = load_config(
        overrides={
            "server_address": server_address,
            "cluster_name": cluster_name,
            "ssh_user": ssh_user,
            "ssh_key": ssh_key,
            "ssh_password": ssh_password,
            "remote_config_path": remote_config_path,
            "local_kubeconfig": local_kubeconfig,
            "api_port": api_port,
            "verify": verify,
        }
    )
    return run_pipeline(config)
