"""Fetch a kubeconfig from a remote node via the ``ssh`` client (subprocess).

Password authentication goes through ``sshpass -e``; the secret is handed
over in the ``SSHPASS`` environment variable so it never shows up in the
process list.
"""

import os
import shlex
import shutil
import subprocess

from loguru import logger

from kubeconfigstuff.fetchconfig import FetchOptions, InputValidationError

# ssh reserves 255 for its own errors (connect, auth, host key)
SSH_ERROR_EXIT = 255


class DependencyMissingError(Exception):
    """Raised when a required external tool is not installed."""


class RemoteFetchError(Exception):
    """Raised when the remote kubeconfig cannot be read (connection, missing, empty)."""


def preflight(options: FetchOptions) -> None:
    """Check local prerequisites before any remote I/O.

    Raises:
        InputValidationError: If the configured SSH key file does not exist.
        DependencyMissingError: If ``ssh`` (or ``sshpass`` for password auth)
            is not on ``PATH``.
    """
    if options.ssh_key is not None and not options.ssh_key.is_file():
        raise InputValidationError(f"SSH key file not found: {options.ssh_key}")
    if shutil.which("ssh") is None:
        raise DependencyMissingError("ssh client not found on PATH")
    if options.ssh_password and shutil.which("sshpass") is None:
        raise DependencyMissingError(
            "sshpass is required for password authentication. Install with: apt install sshpass / brew install sshpass"
        )


def build_ssh_command(options: FetchOptions) -> list[str]:
    """Return the ssh argv prefix (without the remote command)."""
    cmd = [
        "ssh",
        "-o",
        "StrictHostKeyChecking=no",
        "-o",
        f"ConnectTimeout={options.connect_timeout}",
    ]
    if options.ssh_key is not None:
        cmd += ["-i", str(options.ssh_key)]
    if options.ssh_password:
        cmd = ["sshpass", "-e"] + cmd
    cmd.append(f"{options.ssh_user}@{options.server_address}")
    return cmd


def _run_remote(options: FetchOptions, remote_cmd: str) -> subprocess.CompletedProcess:
    env = None
    if options.ssh_password:
        env = dict(os.environ, SSHPASS=options.ssh_password)
    if options.use_sudo:
        remote_cmd = f"sudo -n {remote_cmd}"
    cmd = build_ssh_command(options) + [remote_cmd]
    logger.debug(f"ssh: {options.ssh_user}@{options.server_address} '{remote_cmd}'")
    try:
        return subprocess.run(cmd, capture_output=True, text=True, env=env)
    except FileNotFoundError as exc:
        raise DependencyMissingError(f"cannot execute {cmd[0]}: {exc}") from exc
    except UnicodeDecodeError as exc:
        raise RemoteFetchError(
            f"Output of '{remote_cmd}' on {options.server_address} is not valid UTF-8: {exc}"
        ) from exc


def fetch_remote_kubeconfig(options: FetchOptions) -> str:
    """Read ``options.remote_config_path`` from ``options.server_address``.

    Returns:
        The raw file content as captured from ssh stdout.

    Raises:
        RemoteFetchError: On connection failure, missing file, failed read,
            output that is not UTF-8, or empty content.
    """
    path = shlex.quote(options.remote_config_path)
    logger.info(f"Connecting to RKE2 server at {options.server_address}...")

    result = _run_remote(options, f"test -f {path}")
    if result.returncode == SSH_ERROR_EXIT:
        raise RemoteFetchError(
            f"Cannot connect to {options.ssh_user}@{options.server_address}: {result.stderr.strip()}"
        )
    if result.returncode != 0:
        raise RemoteFetchError(f"RKE2 kubeconfig not found at {options.remote_config_path}")

    result = _run_remote(options, f"cat {path}")
    if result.returncode != 0:
        raise RemoteFetchError(
            f"Failed to read {options.remote_config_path} (exit {result.returncode}): {result.stderr.strip()}"
        )
    if not result.stdout.strip():
        raise RemoteFetchError("Kubeconfig file is empty")

    logger.info("Successfully extracted kubeconfig from remote server")
    return result.stdout
