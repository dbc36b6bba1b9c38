"""Merge a freshly fetched kubeconfig into an existing one.

Strategies, tried in order until one succeeds:

1. ``KubectlFlattenMerge`` -- ``KUBECONFIG=<new>:<existing> kubectl config
   view --flatten``.  kubectl keeps the first definition of every name, so
   the new file goes first.
2. ``YamlOverrideMerge`` -- in-process ruamel.yaml override of new over
   existing; ``clusters``/``contexts``/``users`` are merged by ``name`` and
   matching entries are replaced whole.
3. ``ConcatenationMerge`` -- plain text append.  May leave duplicate names,
   so the result is flagged ``degraded``.

The structured strategies check their output: every entry of the new
document must be present exactly once with the new values, its contexts
must resolve and ``current-context`` must exist.  A failed check counts as
a failed strategy.
"""

import dataclasses
import os
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Any, Protocol

from loguru import logger

from kubeconfigstuff.document import (
    NAMED_SECTIONS,
    consistency_problems,
    dump_document,
    entry_names,
    find_entry,
    load_document,
)


class MergeError(Exception):
    """Raised when a merge strategy fails or produces an inconsistent kubeconfig."""


class MergeStrategy(Protocol):
    name: str
    degraded: bool

    def available(self) -> bool: ...

    def merge(self, existing: str, new: str) -> str: ...


@dataclasses.dataclass
class MergeResult:
    """Outcome of ``merge_kubeconfigs``.

    Attributes:
        text: The merged kubeconfig.
        strategy: Name of the strategy that produced ``text``.
        degraded: ``True`` for best-effort concatenation (duplicate names
            possible), ``False`` for a verified key-aware merge.
    """

    text: str
    strategy: str
    degraded: bool


def check_merged(merged: str, new: str) -> None:
    """Raise ``MergeError`` unless ``merged`` carries ``new``'s entries consistently."""
    try:
        merged_doc = load_document(merged)
        new_doc = load_document(new)
    except ValueError as exc:
        raise MergeError(f"merged kubeconfig unreadable: {exc}") from exc

    problems: list[str] = []
    for section in NAMED_SECTIONS:
        names = entry_names(merged_doc, section)
        for name in entry_names(new_doc, section):
            count = names.count(name)
            if count != 1:
                problems.append(f"{section} '{name}' present {count} times")
                continue
            if _plain(find_entry(merged_doc, section, name)) != _plain(find_entry(new_doc, section, name)):
                problems.append(f"{section} '{name}' does not carry the new values")

    problems += consistency_problems(merged_doc, entry_names(new_doc, "contexts"))
    if problems:
        raise MergeError("; ".join(problems))

    # unrelated contexts are preserved as found, broken or not
    for p in consistency_problems(merged_doc):
        logger.warning(f"pre-existing kubeconfig issue kept as is: {p}")


def _plain(value: Any) -> Any:
    """Strip ruamel round-trip types so documents from different loaders compare equal."""
    if isinstance(value, dict):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    if isinstance(value, str):
        return str(value)
    return value


class KubectlFlattenMerge:
    name = "kubectl"
    degraded = False

    def available(self) -> bool:
        return shutil.which("kubectl") is not None

    def merge(self, existing: str, new: str) -> str:
        with tempfile.TemporaryDirectory(prefix="kubeconfigstuff_") as tmpdir:
            new_path = Path(tmpdir, "new.yaml")
            existing_path = Path(tmpdir, "existing.yaml")
            new_path.write_text(new)
            existing_path.write_text(existing)
            env = dict(os.environ, KUBECONFIG=f"{new_path}{os.pathsep}{existing_path}")
            try:
                result = subprocess.run(
                    ["kubectl", "config", "view", "--flatten"], capture_output=True, text=True, env=env
                )
            except OSError as exc:
                raise MergeError(f"cannot run kubectl: {exc}") from exc

        if result.returncode != 0:
            raise MergeError(f"kubectl config view failed (exit {result.returncode}): {result.stderr.strip()}")
        check_merged(result.stdout, new)
        return result.stdout


def _override(base: Any, over: Any) -> Any:
    """Recursive override of ``over`` onto ``base``; named sections merge by ``name``."""
    if isinstance(base, dict) and isinstance(over, dict):
        for k, v in over.items():
            if k in NAMED_SECTIONS and isinstance(base.get(k), list) and isinstance(v, list):
                base[k] = _merge_named(base[k], v)
            elif isinstance(v, dict) and isinstance(base.get(k), dict):
                base[k] = _override(base[k], v)
            else:
                base[k] = v
        return base
    return over


def _merge_named(old: list, new: list) -> list:
    new_by_name = {e.get("name"): e for e in new if isinstance(e, dict)}
    placed: set = set()
    merged = []
    for entry in old:
        name = entry.get("name") if isinstance(entry, dict) else None
        if name in new_by_name:
            # replace whole entry at its old position, drop any further duplicates
            if name not in placed:
                merged.append(new_by_name[name])
                placed.add(name)
            continue
        merged.append(entry)
    merged.extend(e for e in new if not (isinstance(e, dict) and e.get("name") in placed))
    old[:] = merged  # keep ruamel's CommentedSeq (and its comments)
    return old


class YamlOverrideMerge:
    name = "yaml-override"
    degraded = False

    def available(self) -> bool:
        return True

    def merge(self, existing: str, new: str) -> str:
        try:
            existing_doc = load_document(existing)
            new_doc = load_document(new)
        except ValueError as exc:
            raise MergeError(str(exc)) from exc
        merged = dump_document(_override(existing_doc, new_doc))
        check_merged(merged, new)
        return merged


class ConcatenationMerge:
    name = "concatenation"
    degraded = True
    logger = logger.bind(classname=__qualname__)

    def available(self) -> bool:
        return True

    def merge(self, existing: str, new: str) -> str:
        self.logger.warning(
            "Falling back to appending the new kubeconfig; duplicate cluster/context/user names may remain"
        )
        merged = existing.rstrip("\n") + "\n\n" + new
        return merged if merged.endswith("\n") else merged + "\n"


DEFAULT_MERGERS: tuple[MergeStrategy, ...] = (KubectlFlattenMerge(), YamlOverrideMerge(), ConcatenationMerge())


def merge_kubeconfigs(
    existing: str,
    new: str,
    strategies: tuple[MergeStrategy, ...] | list[MergeStrategy] | None = None,
) -> MergeResult:
    """Merge ``new`` into ``existing`` with the first strategy that works.

    Raises:
        MergeError: If no strategy was available or all failed.  With the
            default strategies this cannot happen, concatenation always
            succeeds.
    """
    errors: list[str] = []
    for strategy in strategies if strategies is not None else DEFAULT_MERGERS:
        if not strategy.available():
            logger.debug(f"merge strategy '{strategy.name}' unavailable, skipping")
            continue
        try:
            merged = strategy.merge(existing, new)
        except MergeError as exc:
            logger.warning(f"merge strategy '{strategy.name}' failed: {exc}")
            errors.append(f"{strategy.name}: {exc}")
            continue
        if strategy.degraded:
            logger.warning(f"kubeconfig merged by '{strategy.name}' (best effort, not verified)")
        else:
            logger.info(f"kubeconfig merged by '{strategy.name}'")
        return MergeResult(text=merged, strategy=strategy.name, degraded=strategy.degraded)
    raise MergeError("no merge strategy succeeded" + (": " + "; ".join(errors) if errors else ""))
