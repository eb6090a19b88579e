"""Tests for kubesim.commands.parser."""

from __future__ import annotations

from pathlib import Path

import pytest

from kubesim.commands.parser import normalize_resource, parse_command
from kubesim.errors import CommandParseError

# ---------------------------------------------------------------------------
# Resource commands
# ---------------------------------------------------------------------------


class TestResourceCommands:
    def test_create_deployment(self) -> None:
        cmd = parse_command("kubectl create deployment web --image=nginx:1.0 --replicas=3")
        assert (cmd.action, cmd.resource, cmd.name) == ("create", "deployment", "web")
        assert cmd.flag("image") == "nginx:1.0"
        assert cmd.flag("replicas") == "3"
        assert cmd.kind == "create-deployment"

    def test_kubectl_prefix_is_optional(self) -> None:
        assert parse_command("get pods") == parse_command("kubectl get pods")

    def test_get_without_name(self) -> None:
        cmd = parse_command("kubectl get po")
        assert cmd.resource == "pod"
        assert cmd.name == ""
        assert cmd.kind == "get-pods"

    def test_type_slash_name(self) -> None:
        cmd = parse_command("kubectl delete deploy/web")
        assert (cmd.resource, cmd.name) == ("deployment", "web")

    def test_namespace_short_and_long(self) -> None:
        assert parse_command("kubectl get pods -n prod").namespace == "prod"
        assert parse_command("kubectl get pods --namespace=prod").namespace == "prod"
        assert parse_command("kubectl get pods").namespace == "default"

    def test_flag_with_separate_value(self) -> None:
        cmd = parse_command("kubectl scale deployment web --replicas 5")
        assert cmd.flag("replicas") == "5"
        assert cmd.kind == "scale"

    def test_repeated_flag_keeps_every_value(self) -> None:
        cmd = parse_command("kubectl create configmap cfg --from-literal=A=1 --from-literal=B=2")
        assert cmd.flag_values("from-literal") == ["A=1", "B=2"]
        assert cmd.flag("from-literal") == "B=2"

    def test_boolean_flag(self) -> None:
        cmd = parse_command("kubectl label pod p app=web --overwrite")
        assert cmd.has_flag("overwrite")
        assert cmd.args == ("app=web",)

    def test_run_is_create_pod(self) -> None:
        cmd = parse_command("kubectl run debug --image=busybox")
        assert (cmd.action, cmd.resource, cmd.name) == ("create", "pod", "debug")
        assert cmd.kind == "create-pod"

    def test_create_service_subtype(self) -> None:
        cmd = parse_command("kubectl create service nodeport web --tcp=80")
        assert (cmd.resource, cmd.name) == ("service", "web")
        assert cmd.flag("type") == "NodePort"

    def test_create_secret_generic(self) -> None:
        cmd = parse_command("kubectl create secret generic creds --from-literal=PASSWORD=x")
        assert (cmd.resource, cmd.name) == ("secret", "creds")

    def test_quoted_values(self) -> None:
        cmd = parse_command("kubectl create cronjob backup --image=busybox --schedule='*/2 * * * *'")
        assert cmd.flag("schedule") == "*/2 * * * *"


# ---------------------------------------------------------------------------
# Other verbs
# ---------------------------------------------------------------------------


class TestOtherVerbs:
    def test_set_image(self) -> None:
        cmd = parse_command("kubectl set image deployment/web web=web-app:2.0")
        assert cmd.action == "set-image"
        assert cmd.flag("image") == "web-app:2.0"

    def test_rollout_restart(self) -> None:
        cmd = parse_command("kubectl rollout restart deployment web")
        assert cmd.action == "rollout-restart"
        assert cmd.kind == "rollout-restart"
        assert cmd.name == "web"

    def test_rollout_status(self) -> None:
        assert parse_command("kubectl rollout status deploy/web").action == "rollout-status"

    def test_logs_accepts_pod_prefix(self) -> None:
        assert parse_command("kubectl logs pod/web-abc --tail=5").name == "web-abc"

    def test_cordon(self) -> None:
        cmd = parse_command("kubectl cordon node-1")
        assert (cmd.action, cmd.resource, cmd.name) == ("cordon", "node", "node-1")

    def test_taint(self) -> None:
        cmd = parse_command("kubectl taint nodes node-1 gpu=true:NoSchedule")
        assert cmd.name == "node-1"
        assert cmd.args == ("gpu=true:NoSchedule",)

    def test_autoscale(self) -> None:
        cmd = parse_command("kubectl autoscale deployment web --min=2 --max=8 --cpu-percent=50")
        assert cmd.kind == "autoscale"
        assert cmd.flag("max") == "8"

    def test_patch(self) -> None:
        cmd = parse_command("""kubectl patch deploy/web --patch '{"spec":{"replicas":5}}' --type=merge""")
        assert (cmd.action, cmd.resource, cmd.name) == ("patch", "deployment", "web")
        assert cmd.flag("patch") == '{"spec":{"replicas":5}}'
        assert cmd.kind == "patch"

    def test_patch_short_flag_and_yaml_body(self) -> None:
        cmd = parse_command("kubectl patch sts db -n data -p '{spec: {replicas: 1}}'")
        assert (cmd.resource, cmd.name, cmd.namespace) == ("statefulset", "db", "data")
        assert cmd.flag("patch") == "{spec: {replicas: 1}}"

    def test_apply_without_file(self) -> None:
        cmd = parse_command("kubectl apply -f -")
        assert cmd.action == "apply"
        assert cmd.manifest == ""

    def test_apply_reads_file(self, tmp_path: Path) -> None:
        path = tmp_path / "cm.yaml"
        path.write_text("kind: ConfigMap\n", encoding="utf-8")
        assert parse_command(f"kubectl apply -f {path}").manifest == "kind: ConfigMap\n"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class TestParseErrors:
    @pytest.mark.parametrize(
        ("text", "message"),
        [
            ("", "No command entered."),
            ("kubectl", "No command entered."),
            ("kubectl exec web -- sh", "not supported"),
            ("kubectl frobnicate pods", "Unknown command"),
            ("kubectl get widgets", "Unknown resource type"),
            ("kubectl delete deployment", "Missing resource name"),
            ("kubectl scale deployment web", "--replicas=N"),
            ("kubectl scale deployment web --replicas=lots", "non-negative integer"),
            ("kubectl rollout undo deployment web", "Unknown rollout subcommand"),
            ("kubectl set env deployment web", "Unknown set subcommand"),
            ("kubectl label pod p", "Usage: kubectl label"),
            ("kubectl get pods -n", "needs a value"),
            ("kubectl get pods 'unterminated", "Could not tokenise"),
            ("kubectl edit deployment web", "kubectl patch"),
            ("kubectl patch deployment", "Missing resource name"),
            ("kubectl patch deployment web", "Missing patch"),
            ("kubectl patch deployment web -p '[1, 2]'", "must be a JSON or YAML object"),
            ("kubectl patch deployment web -p '{bad'", "Invalid patch"),
            ("kubectl patch deployment web -p '{}' --type json", "Unsupported patch type"),
        ],
    )
    def test_rejected(self, text: str, message: str) -> None:
        with pytest.raises(CommandParseError, match=message):
            parse_command(text)

    def test_missing_manifest_file(self, tmp_path: Path) -> None:
        with pytest.raises(CommandParseError, match="Cannot read manifest"):
            parse_command(f"kubectl apply -f {tmp_path / 'nope.yaml'}")


class TestNormalizeResource:
    @pytest.mark.parametrize(
        ("token", "expected"),
        [
            ("po", "pod"),
            ("Deployments", "deployment"),
            ("rs", "replicaset"),
            ("hpa", "hpa"),
            ("cj", "cronjob"),
            ("sts", "statefulset"),
            ("PersistentVolumes", "pv"),
            ("pvc", "pvc"),
            ("sc", "storageclass"),
        ],
    )
    def test_aliases(self, token: str, expected: str) -> None:
        assert normalize_resource(token) == expected
