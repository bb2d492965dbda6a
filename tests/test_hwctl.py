"""Unit tests for hwctl.py - command line client."""

import json
from unittest.mock import MagicMock, patch

import pytest
import requests
from click.testing import CliRunner

from hwctl import cli, fulfilled_condition, resolve_kind

API = "http://operator.test/api/v1"

NAR = {
    "kind": "NodeAllocationRequest",
    "metadata": {
        "namespace": "cloud-a",
        "name": "nar-1",
        "generation": 1,
        "resourceVersion": "12",
        "finalizers": ["hwplugin.io/finalizer"],
        "deletionTimestamp": None,
    },
    "spec": {"cloudID": "cloud-a", "location": "dc-1"},
    "status": {
        "nodeId": "node-7",
        "conditions": [
            {
                "type": "Fulfilled",
                "status": "True",
                "reason": "Fulfilled",
                "message": "Node node-7 allocated",
                "lastTransitionTime": "2024-01-15T10:30:00Z",
            }
        ],
    },
}


def response(payload, status_code=200):
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = payload
    if status_code >= 400:
        error = requests.exceptions.HTTPError(f"{status_code} Error", response=resp)
        resp.raise_for_status.side_effect = error
    return resp


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def mock_request():
    with patch("hwctl.requests.request") as mock:
        yield mock


def invoke(runner, *args, **kwargs):
    return runner.invoke(cli, ["--api-url", API, *args], **kwargs)


class TestHelpers:
    """Tests for kind aliases and condition lookup."""

    def test_resolve_kind(self):
        assert resolve_kind("nar") == "NodeAllocationRequest"
        assert resolve_kind("NRR") == "NodeReleaseRequest"
        assert resolve_kind("Widget") == "Widget"

    def test_fulfilled_condition(self):
        assert fulfilled_condition(NAR)["reason"] == "Fulfilled"
        assert fulfilled_condition({"status": {}}) is None


class TestCommands:
    """Tests for the CLI commands."""

    def test_get_table(self, runner, mock_request):
        mock_request.return_value = response([NAR])

        result = invoke(runner, "get", "nar", "-n", "cloud-a")

        assert result.exit_code == 0
        assert "nar-1" in result.output
        assert "hwplugin.io/finalizer" in result.output
        mock_request.assert_called_once_with(
            "GET", f"{API}/namespaces/cloud-a/NodeAllocationRequest"
        )

    def test_get_json(self, runner, mock_request):
        mock_request.return_value = response([NAR])

        result = invoke(runner, "get", "nar", "-n", "cloud-a", "-o", "json")

        assert json.loads(result.output) == [NAR]

    def test_describe_not_found(self, runner, mock_request):
        mock_request.return_value = response({"detail": "not found"}, 404)

        result = invoke(runner, "describe", "nar", "missing")

        assert result.exit_code == 0
        assert "Error: 404 Error" in result.output

    def test_apply_creates(self, runner, mock_request, tmp_path):
        manifest = tmp_path / "nar.yaml"
        manifest.write_text(
            "kind: NodeAllocationRequest\n"
            "metadata:\n"
            "  namespace: cloud-a\n"
            "  name: nar-1\n"
            "spec:\n"
            "  cloudID: cloud-a\n"
            "  location: dc-1\n"
        )
        mock_request.side_effect = [response({"detail": "not found"}, 404), response(NAR)]

        result = invoke(runner, "apply", str(manifest))

        assert "NodeAllocationRequest/nar-1 created" in result.output
        method, url = mock_request.call_args[0]
        assert method == "POST"
        assert url == f"{API}/namespaces/cloud-a/NodeAllocationRequest"
        assert mock_request.call_args[1]["json"] == {
            "name": "nar-1",
            "spec": {"cloudID": "cloud-a", "location": "dc-1"},
            "labels": {},
        }

    def test_apply_updates(self, runner, mock_request, tmp_path):
        manifest = tmp_path / "nar.json"
        manifest.write_text(json.dumps({k: NAR[k] for k in ("kind", "metadata", "spec")}))
        mock_request.side_effect = [response(NAR), response(NAR)]

        result = invoke(runner, "apply", str(manifest))

        assert "NodeAllocationRequest/nar-1 updated" in result.output
        assert mock_request.call_args[0][0] == "PUT"
        assert mock_request.call_args[1]["json"] == {"spec": NAR["spec"]}

    def test_delete(self, runner, mock_request):
        mock_request.return_value = response(
            {"message": "Object marked for deletion", "key": "x", "finalizers": []}
        )

        result = invoke(runner, "delete", "nar", "nar-1", "-n", "cloud-a", "--yes")

        assert "Object marked for deletion" in result.output
        assert mock_request.call_args[0] == (
            "DELETE",
            f"{API}/namespaces/cloud-a/NodeAllocationRequest/nar-1",
        )

    def test_reconcile(self, runner, mock_request):
        mock_request.return_value = response({"message": "Reconciliation triggered"})

        result = invoke(runner, "reconcile", "nrr", "nrr-1")

        assert "Reconciliation triggered successfully" in result.output
        assert mock_request.call_args[0][1].endswith(
            "/namespaces/default/NodeReleaseRequest/nrr-1/reconcile"
        )

    def test_status(self, runner, mock_request):
        mock_request.return_value = response(NAR)

        result = invoke(runner, "status", "nar", "nar-1", "-n", "cloud-a")

        assert "Fulfilled: True (Fulfilled)" in result.output
        assert "Node node-7 allocated" in result.output

    def test_kinds(self, runner, mock_request):
        mock_request.return_value = response(
            [
                {
                    "kind": "NodeAllocationRequest",
                    "version": "1.0.0",
                    "spec_schema": {"required": ["cloudID", "location"]},
                }
            ]
        )

        result = invoke(runner, "kinds")

        assert "NodeAllocationRequest" in result.output
        assert "cloudID, location" in result.output
