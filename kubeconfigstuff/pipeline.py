"""Fetch -> sanitize -> rewrite -> merge -> persist -> verify.

Stages of one run::

    NOT_STARTED -> FETCHED -> SANITIZED -> REWRITTEN
        -> MERGED_STRUCTURED | MERGED_FALLBACK | WRITTEN_FRESH
        -> PERSISTED -> VERIFIED (optional)

Every error before PERSISTED propagates and leaves the local kubeconfig
untouched (a backup copy may already exist).  Verification only logs.

Concurrent runs against the same local kubeconfig are not serialized: the
last writer wins.
"""

import dataclasses
from enum import StrEnum, auto
from pathlib import Path

from loguru import logger

from kubeconfigstuff.document import Target, sanitize
from kubeconfigstuff.fetchconfig import FetchOptions
from kubeconfigstuff.merge import MergeError, merge_kubeconfigs
from kubeconfigstuff.persist import atomic_write, backup_file
from kubeconfigstuff.remote import RemoteFetchError, fetch_remote_kubeconfig, preflight
from kubeconfigstuff.rewrite import rewrite_kubeconfig
from kubeconfigstuff.verify import check_connection, verify_context


class Stage(StrEnum):
    NOT_STARTED = auto()
    FETCHED = auto()
    SANITIZED = auto()
    REWRITTEN = auto()
    MERGED_STRUCTURED = auto()
    MERGED_FALLBACK = auto()
    WRITTEN_FRESH = auto()
    PERSISTED = auto()
    VERIFIED = auto()


@dataclasses.dataclass
class PipelineResult:
    """What a run did.

    Attributes:
        kubeconfig: The local kubeconfig that was written.
        stages: Stages reached, in order.
        rewrite_strategy: Rewriter that produced the renamed document.
        merge_strategy: Merge strategy used, ``None`` for a fresh write.
        degraded: ``True`` if the merge fell back to concatenation.
        backup_path: Backup of the previous kubeconfig, if there was one.
        verified: kubectl result for the new context, ``None`` if skipped.
    """

    kubeconfig: Path
    stages: list[Stage] = dataclasses.field(default_factory=lambda: [Stage.NOT_STARTED])
    rewrite_strategy: str | None = None
    merge_strategy: str | None = None
    degraded: bool = False
    backup_path: Path | None = None
    verified: bool | None = None

    @property
    def stage(self) -> Stage:
        return self.stages[-1]

    def advance(self, stage: Stage) -> None:
        logger.debug(f"stage: {self.stage} -> {stage}")
        self.stages.append(stage)


def run_pipeline(options: FetchOptions) -> PipelineResult:
    """Run one fetch-rewrite-merge cycle for ``options``.

    Raises:
        InputValidationError: Missing SSH key file.
        DependencyMissingError: ssh/sshpass missing.
        RemoteFetchError: Remote kubeconfig unreachable, missing or empty.
        MergeError: Local kubeconfig is not UTF-8 text, or (only with
            custom strategies) every merge strategy failed.
    """
    local = options.local_kubeconfig
    result = PipelineResult(kubeconfig=local)

    preflight(options)
    raw = fetch_remote_kubeconfig(options)
    result.advance(Stage.FETCHED)

    clean = sanitize(raw)
    if not clean.strip():
        raise RemoteFetchError("Kubeconfig file is empty after sanitizing")
    result.advance(Stage.SANITIZED)

    target = Target(endpoint=options.server_address, name=options.cluster_name, api_port=options.api_port)
    rewritten = rewrite_kubeconfig(clean, target)
    result.rewrite_strategy = rewritten.strategy
    result.advance(Stage.REWRITTEN)
    logger.info(f"Modified kubeconfig for cluster '{target.name}' ({rewritten.strategy})")

    try:
        existing = local.read_text() if local.is_file() else None
    except UnicodeDecodeError as exc:
        raise MergeError(f"local kubeconfig {local} is not valid UTF-8, left untouched: {exc}") from exc
    if existing is not None:
        result.backup_path = backup_file(local)

    if existing is not None and existing.strip():
        merged = merge_kubeconfigs(existing, rewritten.text)
        text = merged.text
        result.merge_strategy = merged.strategy
        result.degraded = merged.degraded
        result.advance(Stage.MERGED_FALLBACK if merged.degraded else Stage.MERGED_STRUCTURED)
    else:
        text = rewritten.text
        result.advance(Stage.WRITTEN_FRESH)

    atomic_write(local, text)
    result.advance(Stage.PERSISTED)
    if result.merge_strategy is None:
        logger.info(f"Created new kubeconfig file {local}")
    elif result.degraded:
        logger.warning(f"Appended kubeconfig to {local}; check it for duplicate entries")
    else:
        logger.info(f"Successfully merged kubeconfigs into {local}")

    if options.verify:
        result.verified = verify_context(local, target.name)
        if result.verified:
            result.advance(Stage.VERIFIED)
            check_connection(local, target.name)

    return result
