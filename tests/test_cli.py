"""End-to-end tests for canaryctl against the in-memory cluster."""

import json

import pytest

from canary import cli
from canary.cli import EXIT_FAILURE, EXIT_OK, build_parser, main
from canary.errors import ClusterUnavailableError


@pytest.fixture
def run(tmp_path, monkeypatch, cluster, prober):
    """Run canaryctl with the fakes standing in for kubectl and aiohttp."""
    monkeypatch.setattr("canary.controller.KubectlClusterClient", lambda **kwargs: cluster)
    monkeypatch.setattr("canary.controller.HealthProber", lambda **kwargs: prober)
    state_dir = tmp_path / "state"

    def _run(*argv):
        return main(["--state-dir", str(state_dir), "--release", "demo", "-n", "test", *argv])

    _run.state_dir = state_dir
    return _run


def saved_state(run):
    with open(run.state_dir / "test" / "demo.json") as f:
        return json.load(f)


class TestCommands:

    def test_release_cycle(self, run, cluster, capsys):
        assert run("deploy-canary", "v2.0", "--weight", "20") == EXIT_OK
        assert saved_state(run)["phase"] == "canary_active"
        assert cluster.rules["demo"].weights == (80, 20)

        assert run("validate", "--samples", "10", "--min-ratio", "0.9") == EXIT_OK
        assert saved_state(run)["last_validation"]["passed"] is True

        assert run("promote") == EXIT_OK
        state = saved_state(run)
        assert state["phase"] == "idle"
        assert state["stable_version"] == "v2.0"
        assert (state["stable_weight"], state["canary_weight"]) == (100, 0)
        assert cluster.deployments["demo-canary"].desired_replicas == 0

        out = capsys.readouterr().out
        assert "Validation: ✓ PASS" in out

    def test_rollback(self, run, cluster):
        run("deploy-canary", "v3.0", "--weight", "30")

        assert run("rollback", "--reason", "perf regression") == EXIT_OK

        assert saved_state(run)["phase"] == "idle"
        assert cluster.rules["demo"].weights == (100, 0)

    def test_failed_validation_exit_code(self, run, prober):
        run("deploy-canary", "v2.0", "--weight", "20")
        prober.outcomes = [False] * 5

        assert run("validate", "--samples", "10", "--min-ratio", "0.9") == EXIT_FAILURE
        assert saved_state(run)["phase"] == "canary_active"

    def test_invalid_weight(self, run, cluster, capsys):
        assert run("deploy-canary", "v2.0", "--weight", "150") == EXIT_FAILURE

        out = capsys.readouterr().out
        assert "invalid_weight" in out
        assert cluster.mutations == []

    def test_promote_without_validation(self, run, capsys):
        run("deploy-canary", "v2.0", "--weight", "20")

        assert run("promote") == EXIT_FAILURE
        assert "validation_failed" in capsys.readouterr().out
        assert run("promote", "--force") == EXIT_OK

    def test_cluster_failure_then_recovery(self, run, cluster, capsys):
        run("deploy-canary", "v2.0", "--weight", "20")
        cluster.fail_on["patch_traffic_rule"] = ClusterUnavailableError("apiserver down")

        assert run("rollback", "--reason", "bad") == EXIT_FAILURE
        assert saved_state(run)["phase"] == "failed"
        assert "Run 'rollback'" in capsys.readouterr().out

        assert run("rollback", "--reason", "retry") == EXIT_OK
        assert saved_state(run)["phase"] == "idle"

    def test_status_json(self, run, capsys):
        run("deploy-canary", "v2.0", "--weight", "20")
        capsys.readouterr()

        assert run("status") == EXIT_OK
        assert "Phase: canary_active" in capsys.readouterr().out

        assert run("--json", "status") == EXIT_OK
        state = json.loads(capsys.readouterr().out)
        assert state["canary_version"] == "v2.0"
        assert state["canary_weight"] == 20

    def test_history(self, run, capsys):
        run("deploy-canary", "v2.0", "--weight", "20")
        run("rollback", "--reason", "perf regression")
        capsys.readouterr()

        assert run("--json", "history") == EXIT_OK
        records = json.loads(capsys.readouterr().out)
        assert [r["transition"] for r in records] == ["start_canary", "rollback"]
        assert records[1]["reason"] == "perf regression"

        assert run("history", "--limit", "1") == EXIT_OK
        out = capsys.readouterr().out
        assert "rollback" in out
        assert "start_canary" not in out

    def test_history_with_http_backend(self, run, tmp_path, capsys):
        path = tmp_path / "canary.yaml"
        path.write_text("events:\n  backend: http\n  endpoint: http://loki:3100\n")

        assert run("-c", str(path), "history") == EXIT_FAILURE
        out = capsys.readouterr().out
        assert "not available for the http event backend" in out
        assert "http://loki:3100" in out

    def test_history_with_corrupt_log(self, run, capsys):
        path = run.state_dir / "test" / "demo.events.jsonl"
        path.parent.mkdir(parents=True)
        path.write_text('{"transition": "rollback"\n')

        assert run("history") == EXIT_FAILURE
        assert "corrupt event log" in capsys.readouterr().out

    def test_zero_replicas_rejected(self, run, cluster, capsys):
        assert run("deploy-canary", "v2.0", "--weight", "20", "--replicas", "0") == EXIT_FAILURE

        assert "replicas must be a positive integer" in capsys.readouterr().out
        assert cluster.mutations == []


class TestParser:

    def test_no_command(self, capsys):
        assert main([]) == EXIT_FAILURE

    def test_weight_is_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["deploy-canary", "v2.0"])

    def test_rollback_requires_reason(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["rollback"])

    def test_deploy_arguments(self):
        args = build_parser().parse_args(
            ["deploy-canary", "v2.0", "-w", "25", "--image", "repo/app:sha", "--replicas", "2"]
        )
        assert (args.version, args.weight, args.image, args.replicas) == ("v2.0", 25, "repo/app:sha", 2)

    def test_bad_config_file(self, tmp_path, capsys):
        path = tmp_path / "bad.yaml"
        path.write_text("- not a mapping\n")

        assert main(["-c", str(path), "status"]) == EXIT_FAILURE
        assert "could not load config" in capsys.readouterr().out


def test_events_path_defaults_next_to_state(config):
    assert cli.events_path(config) == config.state_path / "test" / "demo.events.jsonl"
