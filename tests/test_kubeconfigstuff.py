"""Tests for kubeconfigstuff: config validation, sanitizing, rewrite and merge strategies."""

import copy
import os
import subprocess
from io import StringIO
from pathlib import Path
from typing import Any
from unittest.mock import patch

import pytest
from loguru import logger
from ruamel.yaml import YAML

from kubeconfigstuff.document import Target, consistency_problems, load_document, sanitize
from kubeconfigstuff.fetchconfig import FetchOptions, InputValidationError, load_config, validate_cluster_name
from kubeconfigstuff.merge import (
    ConcatenationMerge,
    KubectlFlattenMerge,
    MergeError,
    YamlOverrideMerge,
    merge_kubeconfigs,
)
from kubeconfigstuff.rewrite import (
    RewriteError,
    StructuredRewriter,
    TextualRewriter,
    rewrite_kubeconfig,
)

RKE2_TEMPLATE = """apiVersion: v1
clusters:
- cluster:
    certificate-authority-data: TkVXQ0E=
    server: https://127.0.0.1:6443
  name: default
contexts:
- context:
    cluster: default
    user: default
  name: default
current-context: default
kind: Config
preferences: {}
users:
- name: default
  user:
    client-certificate-data: TkVXQ0VSVA==
    client-key-data: TkVXS0VZ
"""


def _kubeconfig(name: str, server: str, ca: str, cert: str, current: str | None = None) -> str:
    return f"""apiVersion: v1
clusters:
- cluster:
    certificate-authority-data: {ca}
    server: {server}
  name: {name}
contexts:
- context:
    cluster: {name}
    user: {name}-user
  name: {name}
current-context: {current or name}
kind: Config
preferences: {{}}
users:
- name: {name}-user
  user:
    client-certificate-data: {cert}
    client-key-data: {cert}KEY
"""


def _load(text: str) -> Any:
    return YAML(typ="safe").load(text)


def _dump(doc: Any) -> str:
    buf = StringIO()
    YAML().dump(doc, buf)
    return buf.getvalue()


def _entries(doc: Any, section: str, name: str) -> list[Any]:
    return [e for e in doc.get(section) or [] if e.get("name") == name]


def _rewritten(name: str = "demo", endpoint: str = "10.0.0.5") -> str:
    return rewrite_kubeconfig(RKE2_TEMPLATE, Target(endpoint, name), strategies=[StructuredRewriter()]).text


# ─── Config / validation ─────────────────────────────────────────────────────


class TestClusterNameValidation:
    @pytest.mark.parametrize("name", ["demo", "my-cluster", "prod_01", "A", "x-y_z-9"])
    def test_valid(self, name: str) -> None:
        assert validate_cluster_name(name)

    @pytest.mark.parametrize("name", ["", "a/b", "with space", "dot.name", "ümlaut", "tab\t", "semi;colon", "new\n"])
    def test_invalid(self, name: str) -> None:
        assert not validate_cluster_name(name)


class TestFetchOptions:
    def test_defaults(self) -> None:
        opts = FetchOptions(server_address="10.0.0.5", cluster_name="demo")
        assert opts.ssh_user == "root"
        assert opts.remote_config_path == "/etc/rancher/rke2/rke2.yaml"
        assert opts.local_kubeconfig == Path.home() / ".kube" / "config"
        assert opts.api_port == 6443
        assert opts.ssh_key is None
        assert opts.verify is True

    def test_frozen(self) -> None:
        opts = FetchOptions(server_address="10.0.0.5", cluster_name="demo")
        with pytest.raises(Exception):
            opts.cluster_name = "other"  # type: ignore[misc]

    def test_password_hidden_from_repr(self) -> None:
        opts = FetchOptions(server_address="h", cluster_name="demo", ssh_password="s3cret")
        assert "s3cret" not in repr(opts)

    def test_key_path_expanded(self) -> None:
        opts = FetchOptions(server_address="h", cluster_name="demo", ssh_key="~/.ssh/id_rsa")  # type: ignore[arg-type]
        assert opts.ssh_key == Path.home() / ".ssh" / "id_rsa"

    def test_invalid_cluster_name(self) -> None:
        with pytest.raises(Exception, match="Invalid cluster name"):
            FetchOptions(server_address="h", cluster_name="bad/name")

    def test_invalid_port(self) -> None:
        with pytest.raises(Exception):
            FetchOptions(server_address="h", cluster_name="demo", api_port=70000)


class TestLoadConfig:
    def test_invalid_name_raises_input_validation_error(self) -> None:
        with pytest.raises(InputValidationError, match="cluster_name"):
            load_config(overrides={"server_address": "h", "cluster_name": "not valid"})

    def test_from_yaml(self, tmp_path: Path) -> None:
        yaml_file = tmp_path / "opts.yaml"
        yaml_file.write_text("ssh_user: ubuntu\napi_port: 9345\nuse_sudo: true\n")
        cfg = load_config(config_path=yaml_file, overrides={"server_address": "h", "cluster_name": "demo"})
        assert cfg.ssh_user == "ubuntu"
        assert cfg.api_port == 9345
        assert cfg.use_sudo is True

    def test_env_overrides_yaml(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        yaml_file = tmp_path / "opts.yaml"
        yaml_file.write_text("ssh_user: ubuntu\n")
        monkeypatch.setenv("KUBECONFIGSTUFF_SSH_USER", "admin")
        cfg = load_config(config_path=yaml_file, overrides={"server_address": "h", "cluster_name": "demo"})
        assert cfg.ssh_user == "admin"

    def test_overrides_take_priority(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("KUBECONFIGSTUFF_SSH_USER", "admin")
        cfg = load_config(overrides={"server_address": "h", "cluster_name": "demo", "ssh_user": "cli"})
        assert cfg.ssh_user == "cli"

    def test_none_overrides_ignored(self) -> None:
        cfg = load_config(overrides={"server_address": "h", "cluster_name": "demo", "ssh_user": None})
        assert cfg.ssh_user == "root"

    def test_nonexistent_yaml(self) -> None:
        cfg = load_config(config_path="/nonexistent/opts.yaml", overrides={"server_address": "h", "cluster_name": "c"})
        assert cfg.cluster_name == "c"


# ─── Document helpers ────────────────────────────────────────────────────────


class TestSanitize:
    @pytest.mark.parametrize(
        "raw",
        [
            RKE2_TEMPLATE,
            RKE2_TEMPLATE.replace("\n", "\r\n"),
            "a\x00b\x1b[31mc\x7f\r\n",
            "\t\tindent\x07\n",
            "",
        ],
    )
    def test_idempotent(self, raw: str) -> None:
        once = sanitize(raw)
        assert sanitize(once) == once

    def test_strips_crlf_and_controls(self) -> None:
        assert sanitize("name: x\r\n\x00server: y\x1b\n") == "name: x\nserver: y\n"

    def test_keeps_newlines_and_text(self) -> None:
        assert sanitize(RKE2_TEMPLATE) == RKE2_TEMPLATE


class TestTarget:
    def test_server_url(self) -> None:
        assert Target("10.0.0.5", "demo").server_url == "https://10.0.0.5:6443"

    def test_ipv6_is_bracketed(self) -> None:
        assert Target("fd00::5", "demo", api_port=443).server_url == "https://[fd00::5]:443"

    def test_user_name(self) -> None:
        assert Target("h", "demo").user_name == "demo-user"


class TestConsistency:
    def test_consistent(self) -> None:
        assert consistency_problems(load_document(_kubeconfig("a", "https://a", "CA", "C"))) == []

    def test_dangling_current_context(self) -> None:
        doc = load_document(_kubeconfig("a", "https://a", "CA", "C", current="missing"))
        assert any("current-context" in p for p in consistency_problems(doc))

    def test_not_a_mapping(self) -> None:
        with pytest.raises(ValueError):
            load_document("- just\n- a list\n")


# ─── Rewrite ─────────────────────────────────────────────────────────────────


class TestStructuredRewriter:
    def test_single_entry_template(self) -> None:
        doc = _load(_rewritten())
        assert doc["clusters"][0]["name"] == "demo"
        assert "10.0.0.5" in doc["clusters"][0]["cluster"]["server"]
        assert doc["contexts"][0]["name"] == "demo"
        assert doc["contexts"][0]["context"] == {"cluster": "demo", "user": "demo-user"}
        assert doc["users"][0]["name"] == "demo-user"
        assert doc["current-context"] == "demo"

    def test_keeps_credentials(self) -> None:
        doc = _load(_rewritten())
        assert doc["clusters"][0]["cluster"]["certificate-authority-data"] == "TkVXQ0E="
        assert doc["users"][0]["user"]["client-key-data"] == "TkVXS0VZ"

    def test_api_port(self) -> None:
        text = StructuredRewriter().rewrite(RKE2_TEMPLATE, Target("node1", "demo", api_port=8443))
        assert _load(text)["clusters"][0]["cluster"]["server"] == "https://node1:8443"

    def test_missing_section_raises(self) -> None:
        with pytest.raises(RewriteError, match="no 'clusters' entry"):
            StructuredRewriter().rewrite("clusters: []\ncontexts: []\n", Target("h", "demo"))

    def test_unparseable_raises(self) -> None:
        with pytest.raises(RewriteError):
            StructuredRewriter().rewrite("clusters: [unclosed\n", Target("h", "demo"))


class TestTextualRewriter:
    def test_equivalent_to_structured(self) -> None:
        target = Target("10.0.0.5", "demo")
        structured = _load(StructuredRewriter().rewrite(RKE2_TEMPLATE, target))
        textual = _load(TextualRewriter().rewrite(RKE2_TEMPLATE, target))
        assert textual == structured

    def test_equivalent_to_structured_with_api_port(self) -> None:
        target = Target("10.0.0.5", "demo", api_port=8443)
        structured = _load(StructuredRewriter().rewrite(RKE2_TEMPLATE, target))
        textual = _load(TextualRewriter().rewrite(RKE2_TEMPLATE, target))
        assert textual == structured
        assert textual["clusters"][0]["cluster"]["server"] == "https://10.0.0.5:8443"

    def test_ipv6_endpoint(self) -> None:
        text = TextualRewriter().rewrite(RKE2_TEMPLATE, Target("fd00::5", "demo", api_port=443))
        assert _load(text)["clusters"][0]["cluster"]["server"] == "https://[fd00::5]:443"

    def test_quoted_server_url_with_path(self) -> None:
        source = RKE2_TEMPLATE.replace("server: https://127.0.0.1:6443", 'server: "https://127.0.0.1:9345/k8s"')
        text = TextualRewriter().rewrite(source, Target("node1", "demo"))
        assert "    server: https://node1:6443\n" in text

    def test_fallback_warning_names_the_reason(self) -> None:
        messages: list[str] = []
        sink_id = logger.add(lambda m: messages.append(m.record["message"]), level="WARNING")
        try:
            TextualRewriter().rewrite(RKE2_TEMPLATE, Target("10.0.0.5", "demo"))
        finally:
            logger.remove(sink_id)
        assert any("not parseable" in m for m in messages)
        assert not any("install" in m for m in messages)

    def test_localhost_server(self) -> None:
        text = TextualRewriter().rewrite(RKE2_TEMPLATE.replace("127.0.0.1", "localhost"), Target("node1", "demo"))
        assert _load(text)["clusters"][0]["cluster"]["server"] == "https://node1:6443"

    def test_without_placeholders_is_noop(self) -> None:
        source = _kubeconfig("prod", "https://prod.example:6443", "CA", "C")
        assert TextualRewriter().rewrite(source, Target("10.0.0.5", "demo")) == source


class TestRewriteKubeconfig:
    def test_prefers_structured(self) -> None:
        result = rewrite_kubeconfig(RKE2_TEMPLATE, Target("10.0.0.5", "demo"))
        assert result.strategy == "structured"

    def test_falls_back_to_textual(self) -> None:
        broken = RKE2_TEMPLATE + "bogus: [unclosed\n"
        result = rewrite_kubeconfig(broken, Target("10.0.0.5", "demo"))
        assert result.strategy == "textual"
        assert "current-context: demo" in result.text
        assert "server: https://10.0.0.5:6443" in result.text

    def test_all_strategies_fail(self) -> None:
        with pytest.raises(RewriteError, match="no rewrite strategy"):
            rewrite_kubeconfig("not: [yaml", Target("h", "demo"), strategies=[StructuredRewriter()])


# ─── Merge ───────────────────────────────────────────────────────────────────


STALE_DEMO = _kubeconfig("demo", "https://10.0.0.1:6443", "T0xEQ0E=", "T0xEQ0VSVA==")
OTHER = _kubeconfig("other", "https://other.example:6443", "T1RIRVJDQQ==", "T1RIRVI=")


def _existing_with_demo_and_other() -> str:
    demo, other = _load(STALE_DEMO), _load(OTHER)
    doc = {
        "apiVersion": "v1",
        "kind": "Config",
        "clusters": other["clusters"] + demo["clusters"],
        "contexts": other["contexts"] + demo["contexts"],
        "users": other["users"] + demo["users"],
        "current-context": "other",
        "preferences": {},
    }
    return _dump(doc)


class TestYamlOverrideMerge:
    def test_replaces_same_name(self) -> None:
        new = _rewritten()
        merged = _load(YamlOverrideMerge().merge(_existing_with_demo_and_other(), new))
        new_doc = _load(new)
        for section, name in (("clusters", "demo"), ("contexts", "demo"), ("users", "demo-user")):
            entries = _entries(merged, section, name)
            assert len(entries) == 1
            assert entries[0] == new_doc[section][0]
        assert "T0xEQ0E=" not in str(merged)

    def test_preserves_unrelated(self) -> None:
        other = _load(OTHER)
        merged = _load(YamlOverrideMerge().merge(_existing_with_demo_and_other(), _rewritten()))
        assert _entries(merged, "clusters", "other") == other["clusters"]
        assert _entries(merged, "contexts", "other") == other["contexts"]
        assert _entries(merged, "users", "other-user") == other["users"]

    def test_current_context_switches(self) -> None:
        merged = _load(YamlOverrideMerge().merge(OTHER, _rewritten()))
        assert merged["current-context"] == "demo"
        assert consistency_problems(merged) == []

    def test_collapses_duplicates_of_new_name(self) -> None:
        existing = _load(STALE_DEMO)
        existing["clusters"] = existing["clusters"] + copy.deepcopy(existing["clusters"])
        merged = _load(YamlOverrideMerge().merge(_dump(existing), _rewritten()))
        assert len(_entries(merged, "clusters", "demo")) == 1

    def test_unparseable_existing_raises(self) -> None:
        with pytest.raises(MergeError):
            YamlOverrideMerge().merge("clusters: [unclosed\n", _rewritten())


class TestKubectlFlattenMerge:
    def test_new_file_first_in_kubeconfig_env(self) -> None:
        seen: dict[str, Any] = {}
        existing, new = OTHER, _rewritten()

        def fake_run(cmd: list[str], **kwargs: Any) -> subprocess.CompletedProcess:
            paths = kwargs["env"]["KUBECONFIG"].split(os.pathsep)
            seen["contents"] = [Path(p).read_text() for p in paths]
            seen["cmd"] = cmd
            return subprocess.CompletedProcess(cmd, 0, stdout=YamlOverrideMerge().merge(existing, new), stderr="")

        with patch("kubeconfigstuff.merge.subprocess.run", side_effect=fake_run):
            merged = KubectlFlattenMerge().merge(existing, new)

        assert seen["cmd"] == ["kubectl", "config", "view", "--flatten"]
        assert seen["contents"] == [new, existing]
        assert _load(merged)["current-context"] == "demo"

    def test_failure_raises(self) -> None:
        failed = subprocess.CompletedProcess([], 1, stdout="", stderr="error loading config")
        with patch("kubeconfigstuff.merge.subprocess.run", return_value=failed):
            with pytest.raises(MergeError, match="error loading config"):
                KubectlFlattenMerge().merge(OTHER, _rewritten())

    def test_output_keeping_stale_values_rejected(self) -> None:
        # kubectl with the wrong file order keeps the old entry
        stale = subprocess.CompletedProcess([], 0, stdout=STALE_DEMO, stderr="")
        with patch("kubeconfigstuff.merge.subprocess.run", return_value=stale):
            with pytest.raises(MergeError, match="new values"):
                KubectlFlattenMerge().merge(STALE_DEMO, _rewritten())


class TestMergeKubeconfigs:
    def test_kubectl_unavailable_uses_yaml_override(self) -> None:
        with patch("kubeconfigstuff.merge.shutil.which", return_value=None):
            result = merge_kubeconfigs(_existing_with_demo_and_other(), _rewritten())
        assert result.strategy == "yaml-override"
        assert result.degraded is False

    def test_kubectl_failure_falls_through(self) -> None:
        failed = subprocess.CompletedProcess([], 1, stdout="", stderr="boom")
        with (
            patch("kubeconfigstuff.merge.shutil.which", return_value="/usr/bin/kubectl"),
            patch("kubeconfigstuff.merge.subprocess.run", return_value=failed),
        ):
            result = merge_kubeconfigs(OTHER, _rewritten())
        assert result.strategy == "yaml-override"

    def test_concatenation_is_degraded(self) -> None:
        result = merge_kubeconfigs(STALE_DEMO, _rewritten(), strategies=[ConcatenationMerge()])
        assert result.degraded is True
        assert result.strategy == "concatenation"
        assert result.text.startswith(STALE_DEMO.rstrip("\n"))
        assert result.text.endswith(_rewritten())

    def test_unparseable_existing_falls_back_to_concatenation(self) -> None:
        existing = "clusters: [unclosed\n"
        with patch("kubeconfigstuff.merge.shutil.which", return_value=None):
            result = merge_kubeconfigs(existing, _rewritten())
        assert result.degraded is True
        assert existing.rstrip("\n") in result.text

    def test_no_strategy_left(self) -> None:
        with pytest.raises(MergeError, match="no merge strategy"):
            merge_kubeconfigs("clusters: [unclosed\n", _rewritten(), strategies=[YamlOverrideMerge()])
