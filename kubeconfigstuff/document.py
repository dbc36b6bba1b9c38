"""Kubeconfig document helpers: sanitizing, ruamel.yaml round-trip, consistency checks."""

import dataclasses
import io
import re
from typing import Any

from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

# top-level sequences whose entries are keyed by "name"
NAMED_SECTIONS: tuple[str, ...] = ("clusters", "contexts", "users")

# C0 controls + DEL, except \n ("\r" is covered by the range)
_CONTROL_CHARS = re.compile(r"[\x00-\x09\x0b-\x1f\x7f]")


@dataclasses.dataclass(frozen=True)
class Target:
    """Where the rewritten kubeconfig should point and what it should be called.

    Attributes:
        endpoint: Node address (hostname, IPv4 or IPv6 literal).
        name: Cluster and context name.
        api_port: Kubernetes API server port.
    """

    endpoint: str
    name: str
    api_port: int = 6443

    @property
    def server_url(self) -> str:
        host = f"[{self.endpoint}]" if ":" in self.endpoint and not self.endpoint.startswith("[") else self.endpoint
        return f"https://{host}:{self.api_port}"

    @property
    def user_name(self) -> str:
        return f"{self.name}-user"


def sanitize(text: str) -> str:
    """Strip carriage returns and every other control byte except newline.

    Idempotent: ``sanitize(sanitize(x)) == sanitize(x)``.
    """
    return _CONTROL_CHARS.sub("", text)


def _yaml() -> YAML:
    y = YAML()  # round-trip: keeps key order, comments and quoting
    y.preserve_quotes = True
    y.width = 4096  # base64 cert blobs stay on one line
    return y


def load_document(text: str) -> Any:
    """Parse kubeconfig text; raises ``ValueError`` if it is not a YAML mapping."""
    try:
        data = _yaml().load(text)
    except YAMLError as exc:
        raise ValueError(f"not valid YAML: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError(f"expected a mapping at document root, got {type(data).__name__}")
    return data


def dump_document(data: Any) -> str:
    buf = io.StringIO()
    _yaml().dump(data, buf)
    return buf.getvalue()


def entry_names(doc: Any, section: str) -> list[str]:
    return [e.get("name") for e in (doc.get(section) or []) if isinstance(e, dict) and e.get("name") is not None]


def find_entry(doc: Any, section: str, name: str) -> Any | None:
    for entry in doc.get(section) or []:
        if isinstance(entry, dict) and entry.get("name") == name:
            return entry
    return None


def consistency_problems(doc: Any, context_names: list[str] | None = None) -> list[str]:
    """List broken references in ``doc``.

    Checks that each context in ``context_names`` (all contexts if ``None``)
    resolves to an existing cluster and user, and that ``current-context``
    names an existing context.  An empty list means consistent.
    """
    problems: list[str] = []
    clusters = set(entry_names(doc, "clusters"))
    users = set(entry_names(doc, "users"))
    contexts = entry_names(doc, "contexts")

    for ctx_name in contexts if context_names is None else context_names:
        ctx = find_entry(doc, "contexts", ctx_name)
        if ctx is None:
            problems.append(f"context '{ctx_name}' missing")
            continue
        body = ctx.get("context") or {}
        if body.get("cluster") not in clusters:
            problems.append(f"context '{ctx_name}' references unknown cluster '{body.get('cluster')}'")
        if body.get("user") not in users:
            problems.append(f"context '{ctx_name}' references unknown user '{body.get('user')}'")

    current = doc.get("current-context")
    if current not in contexts:
        problems.append(f"current-context '{current}' is not a defined context")
    return problems
