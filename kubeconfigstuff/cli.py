#!/usr/bin/env python3
"""CLI entry point for kubeconfigstuff: fetch an RKE2 kubeconfig and merge it.

Connects to the server via ssh, reads the node kubeconfig, renames
cluster/context/user to ``<cluster_name>`` (user: ``<cluster_name>-user``),
points the server at ``https://<server_address>:6443`` and merges the result
into ``~/.kube/config``.

Examples:
    $ python -m kubeconfigstuff.cli 192.168.1.100 my-cluster --key ~/.ssh/id_rsa
    $ python -m kubeconfigstuff.cli 192.168.1.100 my-cluster --password mypassword
    $ python -m kubeconfigstuff.cli 192.168.1.100 my-cluster --user ubuntu --sudo
    $ python -m kubeconfigstuff.cli k3s-node homelab \
        --remote-config-path /etc/rancher/k3s/k3s.yaml --kubeconfig /tmp/kubeconfig -v

Exit codes: 0 on success (and ``--help``), 1 on any failure.
"""

import argparse
import os
import sys

from loguru import logger
from tabulate import tabulate

from kubeconfigstuff import __version__, configure_logging
from kubeconfigstuff.fetchconfig import (
    DEFAULT_API_PORT,
    DEFAULT_REMOTE_CONFIG_PATH,
    DEFAULT_SSH_USER,
    InputValidationError,
    load_config,
)
from kubeconfigstuff.merge import MergeError
from kubeconfigstuff.pipeline import run_pipeline
from kubeconfigstuff.remote import DependencyMissingError, RemoteFetchError
from kubeconfigstuff.rewrite import RewriteError


class _ArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that exits with 1 (not 2) on usage errors."""

    def error(self, message: str) -> None:  # type: ignore[override]
        self.print_help(sys.stderr)
        self.exit(1, f"\n{self.prog}: error: {message}\n")


def _print_banner(target: str) -> None:
    """Log a startup banner with version, target and build time."""
    startup_rows = [
        ["version", __version__],
        ["buildtime", os.environ.get("BUILDTIME", "n/a")],
        ["target", target],
    ]
    table_str = tabulate(startup_rows, tablefmt="mixed_grid")
    lines = table_str.split("\n")
    table_width = len(lines[0])
    title = "kubeconfigstuff starting up"
    title_border = "┍" + "━" * (table_width - 2) + "┑"
    title_row = "│ " + title.center(table_width - 4) + " │"
    separator = lines[0].replace("┍", "┝").replace("┑", "┥").replace("┯", "┿")

    logger.opt(raw=True).info(
        "\n{}\n", title_border + "\n" + title_row + "\n" + separator + "\n" + "\n".join(lines[1:])
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Unset options stay ``None`` so that config file and environment values
    are only overridden by what was actually given.
    """
    parser = _ArgumentParser(
        prog="kubeconfigstuff",
        description="RKE2 kubeconfig generator: fetch the node kubeconfig via ssh and merge it into ~/.kube/config",
    )
    parser.add_argument("server_address", help="IP address or hostname of the RKE2 server")
    parser.add_argument("cluster_name", help="Name to assign to the cluster in kubeconfig ([A-Za-z0-9_-]+)")

    ssh_group = parser.add_argument_group("ssh")
    ssh_group.add_argument(
        "--user", "--ssh-user", dest="ssh_user", help=f"SSH username (default: {DEFAULT_SSH_USER})"
    )
    ssh_group.add_argument("--key", "--ssh-key", dest="ssh_key", help="Path to SSH private key file")
    ssh_group.add_argument(
        "--password", "--ssh-password", dest="ssh_password", help="SSH password (requires sshpass)"
    )
    ssh_group.add_argument(
        "--connect-timeout", dest="connect_timeout", type=int, help="SSH connect timeout in seconds (default: 30)"
    )
    ssh_group.add_argument(
        "--sudo", dest="use_sudo", action="store_true", default=None, help="Read the remote file via 'sudo -n'"
    )

    parser.add_argument(
        "--remote-config-path",
        "--rke2-config",
        dest="remote_config_path",
        help=f"Path to RKE2 kubeconfig on remote server (default: {DEFAULT_REMOTE_CONFIG_PATH})",
    )
    parser.add_argument(
        "--api-port", dest="api_port", type=int, help=f"Kubernetes API port (default: {DEFAULT_API_PORT})"
    )
    parser.add_argument(
        "--kubeconfig", dest="local_kubeconfig", help="Local kubeconfig to merge into (default: ~/.kube/config)"
    )
    parser.add_argument(
        "--no-verify",
        dest="verify",
        action="store_false",
        default=None,
        help="Skip the kubectl context/connection check",
    )
    parser.add_argument("--config", "-c", help="Path to YAML file with default options")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging (DEBUG level)")

    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """CLI entry point: parse args, run the pipeline, map errors to exit codes.

    Returns:
        Exit code: 0 on success, 1 on failure.
    """
    args = parse_args(argv)
    if args.verbose:
        os.environ["LOGURU_LEVEL"] = "DEBUG"
    configure_logging()

    overrides: dict[str, object] = {}
    for key in (
        "server_address",
        "cluster_name",
        "ssh_user",
        "ssh_key",
        "ssh_password",
        "connect_timeout",
        "use_sudo",
        "remote_config_path",
        "api_port",
        "local_kubeconfig",
        "verify",
    ):
        val = getattr(args, key, None)
        if val is not None:
            overrides[key] = val

    try:
        config = load_config(config_path=args.config, overrides=overrides)
    except InputValidationError as exc:
        logger.error(f"Invalid input: {exc}")
        return 1

    _print_banner(f"{config.ssh_user}@{config.server_address}:{config.remote_config_path}")

    try:
        result = run_pipeline(config)
    except (InputValidationError, DependencyMissingError, RemoteFetchError, RewriteError, MergeError) as exc:
        logger.error(str(exc))
        return 1
    except OSError as exc:
        logger.error(f"Cannot write {config.local_kubeconfig}: {exc}")
        return 1

    if result.degraded:
        logger.warning(f"kubeconfig for '{config.cluster_name}' appended without key-aware merge")
    logger.info("RKE2 kubeconfig generation completed successfully!")
    return 0


if __name__ == "__main__":
    sys.exit(main())
