"""Tests for the podmover command line."""

import json
import logging
import os

import pytest
from click.testing import CliRunner

from conftest import RESERVED_SCHEDULER, make_pod, make_rc
from podmover import cli
from podmover.log import ROOT_LOGGER


@pytest.fixture(autouse=True)
def reset_logging():
    """Drop handlers bound to CliRunner's temporary streams."""
    yield
    logger = logging.getLogger(ROOT_LOGGER)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)


@pytest.fixture
def runner(monkeypatch, cluster):
    """CliRunner whose commands talk to the fake cluster."""
    for name in list(os.environ):
        if name.startswith("PODMOVER_"):
            monkeypatch.delenv(name)
    monkeypatch.setattr(cli, "load_kube_clients", lambda *args, **kwargs: (cluster, cluster))
    return CliRunner()


def invoke(runner, *args):
    return runner.invoke(cli.main, ["--log-level", "ERROR", *args])


# ── move ──────────────────────────────────────────────────────


class TestMoveCommand:
    """Tests for `podmover move`."""

    def test_move_standalone(self, runner, cluster, no_sleep):
        cluster.add_pod(make_pod("p1", node="n1"))

        result = invoke(runner, "move", "-p", "p1", "-N", "n2", "--health-delay", "0")

        assert result.exit_code == 0, result.output
        assert "OK      default/p1" in result.output
        assert "1/1 pod(s) moved to n2" in result.output

    def test_move_controller_owned(self, runner, cluster, no_sleep):
        cluster.add_rc(make_rc("rc1", namespace="shop"))
        cluster.add_pod(make_pod("p1", node="n1", namespace="shop",
                                 owner_kind="ReplicationController", owner_name="rc1"))

        result = invoke(
            runner, "move", "-n", "shop", "-p", "p1", "-N", "n2", "--no-health-check",
            "--scheduler-name", RESERVED_SCHEDULER,
        )

        assert result.exit_code == 0, result.output
        assert cluster.pods[("shop", "p1")].spec.node_name == "n2"
        assert cluster.rc_scheduler("rc1", "shop") == "default-scheduler"

    def test_exit_code_is_highest(self, runner, cluster, no_sleep):
        cluster.add_pod(make_pod("p1", node="n1"))
        cluster.add_pod(make_pod("p2", node="n2"))

        result = invoke(runner, "move", "-p", "p1,p2,ghost", "-N", "n2", "--no-health-check")

        assert result.exit_code == 1
        assert "FAILED  default/p2" in result.output
        assert "FAILED  default/ghost" in result.output
        assert "1/3 pod(s) moved" in result.output

    def test_unhealthy_pod(self, runner, cluster, no_sleep, monkeypatch):
        cluster.add_pod(make_pod("p1", node="n1"))
        original_create = cluster.create_namespaced_pod

        def _create_pending(namespace, body, **kwargs):
            pod = original_create(namespace, body, **kwargs)
            cluster.pods[(namespace, body.metadata.name)].status.phase = "Pending"
            return pod

        monkeypatch.setattr(cluster, "create_namespaced_pod", _create_pending)

        result = invoke(runner, "move", "-p", "p1", "-N", "n2", "--health-delay", "0")

        assert result.exit_code == 4
        assert "not running" in result.output

    def test_json_output(self, runner, cluster, no_sleep):
        cluster.add_pod(make_pod("p1", node="n1"))

        result = invoke(runner, "move", "-p", "p1", "-N", "n2", "--no-health-check", "--json")

        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["exitCode"] == 0
        assert data["results"] == [
            {"pod": "default/p1", "ok": True, "exitCode": 0, "node": "n2"}
        ]

    def test_node_required(self, runner):
        result = invoke(runner, "move", "-p", "p1")

        assert result.exit_code == 2
        assert "--node" in result.output

    def test_no_pods(self, runner):
        result = invoke(runner, "move", "-N", "n2")

        assert result.exit_code == 1
        assert "no pods given" in result.output

    def test_invalid_settings(self, runner):
        result = invoke(runner, "move", "-p", "p1", "-N", "n2",
                        "--scheduler-name", "default-scheduler")

        assert result.exit_code == 1
        assert "schedulerName" in result.output

    def test_missing_config_file(self, runner, tmp_path):
        result = runner.invoke(cli.main, [
            "--config", str(tmp_path / "missing.yaml"), "move", "-p", "p1", "-N", "n2",
        ])

        assert result.exit_code == 1
        assert "Config file not found" in result.output

    def test_pods_from_config_file(self, runner, cluster, tmp_path, no_sleep):
        cluster.add_pod(make_pod("p1", node="n1", namespace="shop"))
        config = tmp_path / "podmover.yaml"
        config.write_text(
            "apiVersion: podmover.io/v1\n"
            "kind: PodMoverConfig\n"
            "spec:\n"
            "  namespace: shop\n"
            "  pods: [p1]\n"
            "  logLevel: ERROR\n"
        )

        result = runner.invoke(cli.main, [
            "--config", str(config), "move", "-N", "n2", "--no-health-check",
        ])

        assert result.exit_code == 0, result.output
        assert cluster.pods[("shop", "p1")].spec.node_name == "n2"


# ── Diagnostics ───────────────────────────────────────────────


class TestDiagnostics:
    """Tests for `podmover owner` and `podmover scheduler`."""

    def test_owner(self, runner, cluster):
        cluster.add_pod(make_pod("p1", owner_kind="ReplicaSet", owner_name="web-5d8f"))

        result = invoke(runner, "owner", "default", "p1")

        assert result.exit_code == 0
        assert "default/p1: ReplicaSet/web-5d8f" in result.output

    def test_owner_standalone(self, runner, cluster):
        cluster.add_pod(make_pod("p1"))

        result = invoke(runner, "owner", "default", "p1")

        assert "no owner" in result.output

    def test_owner_missing_pod(self, runner):
        result = invoke(runner, "owner", "default", "ghost")
        assert result.exit_code == 1

    def test_scheduler(self, runner, cluster):
        cluster.add_rc(make_rc("rc1"))

        result = invoke(runner, "scheduler", "default", "ReplicationController", "rc1")

        assert result.exit_code == 0
        assert "ReplicationController/rc1 in default: default-scheduler" in result.output

    def test_scheduler_legacy(self, runner, cluster):
        cluster.add_rc(make_rc("rc1", scheduler=None))

        result = invoke(runner, "scheduler", "default", "ReplicationController", "rc1",
                        "--k8s-version", "1.5")

        assert "ReplicationController/rc1 in default: None" in result.output

    def test_scheduler_missing(self, runner):
        result = invoke(runner, "scheduler", "default", "ReplicaSet", "nope")
        assert result.exit_code == 1
