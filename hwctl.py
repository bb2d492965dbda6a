#!/usr/bin/env python3
"""
CLI tool for the hardware plugin operator.
Provides a kubectl-like interface for node allocation and release requests.
"""

import json
import os
import time

import click
import requests
import yaml
from tabulate import tabulate

API_BASE_URL = os.getenv("HWCTL_API_URL", "http://localhost:8000/api/v1")

KIND_ALIASES = {
    "nar": "NodeAllocationRequest",
    "allocation": "NodeAllocationRequest",
    "nrr": "NodeReleaseRequest",
    "release": "NodeReleaseRequest",
}


def resolve_kind(kind: str) -> str:
    return KIND_ALIASES.get(kind.lower(), kind)


def fulfilled_condition(obj: dict):
    for condition in obj.get("status", {}).get("conditions", []):
        if condition.get("type") == "Fulfilled":
            return condition
    return None


class OperatorCLI:
    """CLI client for the operator REST API"""

    def __init__(self, base_url: str = API_BASE_URL):
        self.base_url = base_url

    def _make_request(self, method: str, endpoint: str, **kwargs):
        """Make HTTP request to the API"""
        url = f"{self.base_url}{endpoint}"
        try:
            response = requests.request(method, url, **kwargs)
            response.raise_for_status()
            return response.json()
        except requests.exceptions.RequestException as e:
            click.echo(f"Error: {e}", err=True)
            if hasattr(e, "response") and e.response is not None:
                try:
                    error_detail = e.response.json()
                    click.echo(f"Detail: {error_detail}", err=True)
                except (ValueError, json.JSONDecodeError):
                    click.echo(f"Response: {e.response.text}", err=True)
            return None

    def object_path(self, namespace: str, kind: str, name: str = "") -> str:
        path = f"/namespaces/{namespace}/{resolve_kind(kind)}"
        return f"{path}/{name}" if name else path


def load_manifest(filename: str) -> dict:
    with open(filename, "r") as f:
        if filename.endswith(".yaml") or filename.endswith(".yml"):
            return yaml.safe_load(f)
        return json.load(f)


@click.group()
@click.option("--api-url", default=API_BASE_URL, help="Base URL of the operator API")
@click.pass_context
def cli(ctx, api_url):
    """Hardware plugin operator CLI - kubectl-like interface for node requests"""
    ctx.obj = OperatorCLI(api_url)


@cli.command()
@click.argument("filename", type=click.Path(exists=True))
@click.pass_obj
def apply(client, filename):
    """Create or update an object from a YAML/JSON manifest"""
    data = load_manifest(filename)
    kind = data["kind"]
    metadata = data.get("metadata", {})
    namespace = metadata.get("namespace", "default")
    name = metadata["name"]
    spec = data.get("spec", {})

    existing = client._make_request("GET", client.object_path(namespace, kind, name))
    if existing:
        result = client._make_request(
            "PUT", client.object_path(namespace, kind, name), json={"spec": spec}
        )
        action = "updated"
    else:
        result = client._make_request(
            "POST",
            client.object_path(namespace, kind),
            json={"name": name, "spec": spec, "labels": metadata.get("labels", {})},
        )
        action = "created"

    if result:
        click.echo(f"{result['kind']}/{result['metadata']['name']} {action}")
        click.echo(f"Generation: {result['metadata']['generation']}")


@cli.command()
@click.argument("kind")
@click.option("--namespace", "-n", default="default")
@click.option(
    "--output", "-o", type=click.Choice(["table", "json", "yaml"]), default="table"
)
@click.pass_obj
def get(client, kind, namespace, output):
    """List objects of a kind"""
    result = client._make_request("GET", client.object_path(namespace, kind))
    if result is None:
        return

    if output == "json":
        click.echo(json.dumps(result, indent=2))
        return
    if output == "yaml":
        click.echo(yaml.dump(result, default_flow_style=False))
        return

    headers = ["Name", "Fulfilled", "Reason", "Finalizers", "Deleting", "Version"]
    rows = []
    for obj in result:
        condition = fulfilled_condition(obj) or {}
        metadata = obj["metadata"]
        rows.append(
            [
                metadata["name"],
                condition.get("status", "-"),
                condition.get("reason", "-"),
                ",".join(metadata.get("finalizers", [])) or "-",
                "yes" if metadata.get("deletionTimestamp") else "no",
                metadata["resourceVersion"],
            ]
        )
    click.echo(tabulate(rows, headers=headers, tablefmt="grid"))


@cli.command()
@click.argument("kind")
@click.argument("name")
@click.option("--namespace", "-n", default="default")
@click.option("--output", "-o", type=click.Choice(["json", "yaml"]), default="yaml")
@click.pass_obj
def describe(client, kind, name, namespace, output):
    """Describe a specific object"""
    result = client._make_request("GET", client.object_path(namespace, kind, name))

    if result:
        if output == "yaml":
            click.echo(yaml.dump(result, default_flow_style=False))
        else:
            click.echo(json.dumps(result, indent=2))


@cli.command()
@click.argument("kind")
@click.argument("name")
@click.option("--namespace", "-n", default="default")
@click.confirmation_option(prompt="Are you sure you want to delete this object?")
@click.pass_obj
def delete(client, kind, name, namespace):
    """Request deletion of an object (runs its cleanup)"""
    result = client._make_request("DELETE", client.object_path(namespace, kind, name))

    if result:
        click.echo(result["message"])


@cli.command()
@click.argument("kind")
@click.argument("name")
@click.option("--namespace", "-n", default="default")
@click.pass_obj
def reconcile(client, kind, name, namespace):
    """Manually trigger reconciliation of an object"""
    result = client._make_request(
        "POST", client.object_path(namespace, kind, name) + "/reconcile"
    )

    if result:
        click.echo("Reconciliation triggered successfully")


@cli.command()
@click.pass_obj
def kinds(client):
    """List the kinds the operator reconciles"""
    result = client._make_request("GET", "/kinds")
    if result:
        rows = [
            [k["kind"], k["version"], ", ".join(k["spec_schema"].get("required", []))]
            for k in result
        ]
        click.echo(tabulate(rows, headers=["Kind", "Version", "Required"]))


@cli.command()
@click.argument("kind")
@click.argument("name")
@click.option("--namespace", "-n", default="default")
@click.option("--follow", "-f", is_flag=True, help="Follow status updates")
@click.option("--interval", "-i", default=5, help="Polling interval in seconds")
@click.pass_obj
def status(client, kind, name, namespace, follow, interval):
    """Show the Fulfilled condition of an object"""

    def show_status():
        result = client._make_request(
            "GET", client.object_path(namespace, kind, name)
        )
        if not result:
            return
        metadata = result["metadata"]
        condition = fulfilled_condition(result)

        click.clear()
        click.echo(f"Object: {result['kind']}/{metadata['namespace']}/{metadata['name']}")
        click.echo(f"Generation: {metadata['generation']}")
        click.echo(f"Finalizers: {', '.join(metadata.get('finalizers', [])) or 'none'}")
        if condition is None:
            click.echo("\nNot reconciled yet")
            return
        click.echo(f"Fulfilled: {condition['status']} ({condition['reason']})")
        click.echo(f"Message: {condition['message']}")
        click.echo(f"Since: {condition.get('lastTransitionTime', 'N/A')}")
        if metadata.get("deletionTimestamp"):
            click.echo("\nObject is being deleted")

    show_status()

    if follow:
        try:
            while True:
                time.sleep(interval)
                show_status()
        except KeyboardInterrupt:
            click.echo("\nStopped following")


if __name__ == "__main__":
    cli()
