"""Rename cluster/context/user and repoint the server of a fetched kubeconfig.

Two strategies, tried in order:

* ``StructuredRewriter`` parses the document with ruamel.yaml and sets the
  fields by path on the first entry of each section.
* ``TextualRewriter`` substitutes the RKE2/K3s placeholders (``default``
  names, ``127.0.0.1``/``localhost`` server URL) line by line.  It only
  works for documents using those placeholders; anything else is left as
  is and a warning is logged.

Both produce the same document for the usual single-entry node kubeconfig.
"""

import dataclasses
import re
from typing import Protocol

from loguru import logger

from kubeconfigstuff.document import NAMED_SECTIONS, Target, dump_document, load_document

PLACEHOLDER_NAME = "default"
LOOPBACK_HOSTS: tuple[str, ...] = ("127.0.0.1", "localhost")


class RewriteError(Exception):
    """Raised by a rewrite strategy that cannot handle the document."""


class RewriteStrategy(Protocol):
    name: str

    def rewrite(self, text: str, target: Target) -> str: ...


@dataclasses.dataclass
class RewriteResult:
    """Outcome of ``rewrite_kubeconfig``.

    Attributes:
        text: The rewritten kubeconfig.
        strategy: Name of the strategy that produced ``text``.
    """

    text: str
    strategy: str


class StructuredRewriter:
    name = "structured"
    logger = logger.bind(classname=__qualname__)

    def rewrite(self, text: str, target: Target) -> str:
        try:
            doc = load_document(text)
        except ValueError as exc:
            raise RewriteError(str(exc)) from exc

        firsts = {}
        for section in NAMED_SECTIONS:
            entries = doc.get(section)
            if not isinstance(entries, list) or not entries or not isinstance(entries[0], dict):
                raise RewriteError(f"no '{section}' entry to rewrite")
            if len(entries) > 1:
                self.logger.warning(f"{len(entries)} {section} entries found, only the first one is rewritten")
            firsts[section] = entries[0]

        cluster = firsts["clusters"]
        cluster["name"] = target.name
        if not isinstance(cluster.get("cluster"), dict):
            cluster["cluster"] = {}
        cluster["cluster"]["server"] = target.server_url

        context = firsts["contexts"]
        context["name"] = target.name
        if not isinstance(context.get("context"), dict):
            context["context"] = {}
        context["context"]["cluster"] = target.name
        context["context"]["user"] = target.user_name

        firsts["users"]["name"] = target.user_name
        doc["current-context"] = target.name

        return dump_document(doc)


_SECTION_RE = re.compile(r"^([A-Za-z][\w-]*):")
_NAME_RE = re.compile(rf"^(\s*(?:-\s+)?)name:(\s*){PLACEHOLDER_NAME}\s*$")
_REF_RE = re.compile(rf"^(\s*(?:-\s+)?)(cluster|user):(\s*){PLACEHOLDER_NAME}\s*$")
_CURRENT_RE = re.compile(rf"^current-context:(\s*){PLACEHOLDER_NAME}\s*$")
# whole loopback URL (scheme, host, optional port and path) on a server: line
_SERVER_RE = re.compile(
    r"^(\s*(?:-\s+)?server:\s*)[\"']?https?://(?:"
    + "|".join(re.escape(h) for h in LOOPBACK_HOSTS)
    + r")(?::\d+)?(?:/\S*?)?[\"']?\s*$"
)


class TextualRewriter:
    name = "textual"
    logger = logger.bind(classname=__qualname__)

    def rewrite(self, text: str, target: Target) -> str:
        self.logger.warning(
            "kubeconfig not parseable as a single-entry document, using placeholder substitution"
        )

        section: str | None = None
        hits = 0
        out: list[str] = []

        for line in text.split("\n"):
            m = _SECTION_RE.match(line)
            if m:
                section = m.group(1)

            new = _CURRENT_RE.sub(lambda mm: f"current-context:{mm.group(1)}{target.name}", line)
            new = _NAME_RE.sub(
                lambda mm: f"{mm.group(1)}name:{mm.group(2)}{target.user_name if section == 'users' else target.name}",
                new,
            )
            new = _REF_RE.sub(
                lambda mm: f"{mm.group(1)}{mm.group(2)}:{mm.group(3)}"
                + (target.user_name if mm.group(2) == "user" else target.name),
                new,
            )
            new = _SERVER_RE.sub(lambda mm: f"{mm.group(1)}{target.server_url}", new)

            if new != line:
                hits += 1
            out.append(new)

        if hits == 0:
            self.logger.warning(
                f"No '{PLACEHOLDER_NAME}'/loopback placeholders found; names and server left unchanged"
            )
        return "\n".join(out)


DEFAULT_REWRITERS: tuple[RewriteStrategy, ...] = (StructuredRewriter(), TextualRewriter())


def rewrite_kubeconfig(
    text: str,
    target: Target,
    strategies: tuple[RewriteStrategy, ...] | list[RewriteStrategy] | None = None,
) -> RewriteResult:
    """Apply the first rewrite strategy that succeeds.

    Raises:
        RewriteError: If every strategy failed (only possible with a custom
            strategy list, ``TextualRewriter`` never raises).
    """
    errors: list[str] = []
    for strategy in strategies if strategies is not None else DEFAULT_REWRITERS:
        try:
            rewritten = strategy.rewrite(text, target)
        except RewriteError as exc:
            logger.warning(f"{strategy.name} rewrite failed: {exc}")
            errors.append(f"{strategy.name}: {exc}")
            continue
        logger.debug(f"kubeconfig rewritten by '{strategy.name}' strategy")
        return RewriteResult(text=rewritten, strategy=strategy.name)
    raise RewriteError("no rewrite strategy succeeded: " + "; ".join(errors))
