"""Pydantic configuration for a kubeconfig fetch run.

Loads options from a YAML file, environment variables (KUBECONFIGSTUFF_
prefix), or direct overrides (CLI args).  The resulting ``FetchOptions`` is
frozen and passed explicitly through the pipeline.
"""

import os
import re
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from ruamel.yaml import YAML

DEFAULT_SSH_USER = "root"
DEFAULT_REMOTE_CONFIG_PATH = "/etc/rancher/rke2/rke2.yaml"
DEFAULT_LOCAL_KUBECONFIG = Path.home() / ".kube" / "config"
DEFAULT_API_PORT = 6443

_CLUSTER_NAME_RE = re.compile(r"^[A-Za-z0-9_-]+$")


class InputValidationError(Exception):
    """Raised for invalid user input (cluster name, option values, missing key file)."""


def validate_cluster_name(name: str) -> bool:
    """Return ``True`` if ``name`` only uses letters, digits, hyphen and underscore."""
    return bool(_CLUSTER_NAME_RE.fullmatch(name or ""))


class FetchOptions(BaseModel):
    """Everything one fetch-rewrite-merge run needs."""

    model_config = ConfigDict(frozen=True)

    server_address: str = Field(min_length=1, description="IP address or hostname of the RKE2 server")
    cluster_name: str = Field(description="Name for cluster/context in the local kubeconfig")
    ssh_user: str = Field(default=DEFAULT_SSH_USER, min_length=1, description="SSH login user")
    ssh_key: Path | None = Field(default=None, description="SSH private key file")
    ssh_password: str | None = Field(default=None, repr=False, description="SSH password (requires sshpass)")
    remote_config_path: str = Field(
        default=DEFAULT_REMOTE_CONFIG_PATH, min_length=1, description="Kubeconfig location on the server"
    )
    local_kubeconfig: Path = Field(default=DEFAULT_LOCAL_KUBECONFIG, description="Local kubeconfig to merge into")
    api_port: int = Field(default=DEFAULT_API_PORT, ge=1, le=65535, description="Kubernetes API server port")
    connect_timeout: int = Field(default=30, ge=1, le=600, description="SSH ConnectTimeout in seconds")
    use_sudo: bool = Field(default=False, description="Read the remote file via 'sudo -n'")
    verify: bool = Field(default=True, description="Query the new context with kubectl afterwards")

    @field_validator("cluster_name")
    @classmethod
    def _check_cluster_name(cls, v: str) -> str:
        if not validate_cluster_name(v):
            raise ValueError(f"Invalid cluster name: {v!r} (use only letters, numbers, hyphens, and underscores)")
        return v

    @field_validator("ssh_key", "local_kubeconfig")
    @classmethod
    def _expand_user(cls, v: Path | None) -> Path | None:
        return v.expanduser() if v is not None else None

    @field_validator("ssh_password")
    @classmethod
    def _empty_password_is_none(cls, v: str | None) -> str | None:
        return v or None


_ENV_MAP = {
    "KUBECONFIGSTUFF_SSH_USER": "ssh_user",
    "KUBECONFIGSTUFF_SSH_KEY": "ssh_key",
    "KUBECONFIGSTUFF_SSH_PASSWORD": "ssh_password",
    "KUBECONFIGSTUFF_REMOTE_CONFIG_PATH": "remote_config_path",
    "KUBECONFIGSTUFF_KUBECONFIG": "local_kubeconfig",
    "KUBECONFIGSTUFF_API_PORT": "api_port",
    "KUBECONFIGSTUFF_CONNECT_TIMEOUT": "connect_timeout",
    "KUBECONFIGSTUFF_USE_SUDO": "use_sudo",
    "KUBECONFIGSTUFF_VERIFY": "verify",
}


def load_config(
    config_path: str | Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> FetchOptions:
    """Load FetchOptions from YAML file, environment variables, and overrides.

    Priority (highest first): overrides > env vars > YAML file.  ``None``
    values in ``overrides`` are ignored.

    Raises:
        InputValidationError: If the merged values do not validate.
    """
    data: dict[str, Any] = {}

    # 1. YAML file
    if config_path is not None:
        path = Path(config_path).expanduser()
        if path.is_file():
            loaded = YAML(typ="safe").load(path)
            if isinstance(loaded, dict):
                data = dict(loaded)

    # 2. Environment variables
    for env_key, field in _ENV_MAP.items():
        val = os.getenv(env_key)
        if val is not None:
            data[field] = val

    # 3. Overrides from caller (e.g. CLI args)
    if overrides:
        for key, val in overrides.items():
            if val is not None:
                data[key] = val

    try:
        return FetchOptions(**data)
    except ValidationError as exc:
        msgs = "; ".join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors())
        raise InputValidationError(msgs) from exc
