"""Post-write checks with kubectl.  Informational only, never fatal."""

import shutil
import subprocess
from pathlib import Path

from loguru import logger


def _kubectl(kubeconfig: Path, *args: str) -> subprocess.CompletedProcess | None:
    if shutil.which("kubectl") is None:
        return None
    try:
        return subprocess.run(["kubectl", "--kubeconfig", str(kubeconfig), *args], capture_output=True, text=True)
    except OSError as exc:
        logger.warning(f"cannot run kubectl: {exc}")
        return None


def verify_context(kubeconfig: Path, context: str) -> bool:
    """Return ``True`` if ``kubectl config get-contexts <context>`` finds it."""
    result = _kubectl(kubeconfig, "config", "get-contexts", context)
    if result is None:
        logger.warning("kubectl not found, cannot verify the new context")
        return False
    if result.returncode == 0:
        logger.info(f"Context '{context}' successfully created")
        return True
    logger.warning(f"Context creation may have failed: {result.stderr.strip()}")
    return False


def check_connection(kubeconfig: Path, context: str) -> bool:
    """Return ``True`` if ``kubectl cluster-info --context <context>`` succeeds."""
    logger.info("Testing connection...")
    result = _kubectl(kubeconfig, "cluster-info", "--context", context)
    if result is None:
        logger.warning("kubectl not found. Install kubectl to test the connection.")
        return False
    if result.returncode == 0:
        logger.info("Connection test successful")
        return True
    logger.warning("Connection test failed, but kubeconfig was created")
    logger.info(f"Test manually with: kubectl cluster-info --context {context}")
    return False
