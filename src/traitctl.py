#!/usr/bin/env python3
"""
CLI tool for the ServiceTrait operator
Provides a kubectl-like interface for applying and inspecting objects
"""

import json
import os
import time

import click
import requests
import yaml
from tabulate import tabulate

from validation import validate_manifest

API_BASE_URL = os.getenv("TRAITCTL_API_URL", "http://localhost:8000/api/v1")

OAM_API_VERSION = "core.oam.dev/v1alpha2"

# kind -> (apiVersion, namespaced)
KNOWN_KINDS = {
    "ServiceTrait": (OAM_API_VERSION, True),
    "WorkloadDefinition": (OAM_API_VERSION, False),
    "StatefulSet": ("apps/v1", True),
    "Deployment": ("apps/v1", True),
    "Service": ("v1", True),
}


def resolve_kind(kind: str):
    """Resolve a kind name, its lower-case form or its plural"""
    needle = kind.lower()
    for known in KNOWN_KINDS:
        if needle in (known.lower(), known.lower() + "s"):
            return known
    return kind


class TraitControllerCLI:
    """CLI client for the ServiceTrait operator API"""

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
                except ValueError:
                    click.echo(f"Response: {e.response.text}", err=True)
            return None

    def object_path(self, kind: str, name: str, namespace: str) -> str:
        """API path of a single object"""
        _, namespaced = KNOWN_KINDS.get(kind, ("", True))
        if namespaced:
            return f"/namespaces/{namespace}/objects/{kind}/{name}"
        return f"/objects/{kind}/{name}"

    def api_version_for(self, kind: str, api_version=None) -> str:
        if api_version:
            return api_version
        if kind not in KNOWN_KINDS:
            raise click.UsageError(f"Unknown kind {kind}, pass --api-version")
        return KNOWN_KINDS[kind][0]


def load_manifests(filename):
    """Read the manifests in a YAML (multi-document) or JSON file"""
    with open(filename, "r") as f:
        if filename.endswith(".yaml") or filename.endswith(".yml"):
            return [doc for doc in yaml.safe_load_all(f) if doc]
        data = json.load(f)
    return data if isinstance(data, list) else [data]


def format_conditions(obj):
    rows = []
    for condition in obj.get("status", {}).get("conditions", []):
        rows.append(
            [
                condition.get("type", ""),
                condition.get("status", ""),
                condition.get("reason", ""),
                condition.get("message", ""),
                condition.get("lastTransitionTime", ""),
            ]
        )
    return rows


@click.group()
def cli():
    """ServiceTrait operator CLI - kubectl-like interface for traits and workloads"""
    pass


@cli.command()
@click.argument("filename", type=click.Path(exists=True))
@click.option("--field-manager", default="traitctl", help="Field manager name")
@click.option("--force", is_flag=True, help="Take over fields owned by others")
def apply(filename, field_manager, force):
    """Apply objects from a YAML/JSON file"""
    client = TraitControllerCLI()

    for manifest in load_manifests(filename):
        is_valid, error = validate_manifest(manifest)
        if not is_valid:
            click.echo(f"Skipping invalid manifest: {error}", err=True)
            continue
        result = client._make_request(
            "PUT",
            "/objects",
            json=manifest,
            params={"fieldManager": field_manager, "force": str(force).lower()},
        )
        if result:
            metadata = result["metadata"]
            click.echo(
                f"{result['kind']}/{metadata['name']} applied "
                f"(generation {metadata['generation']})"
            )


@cli.command()
@click.argument("kind")
@click.option("--namespace", "-n", default="default", help="Namespace")
@click.option("--all-namespaces", "-A", is_flag=True, help="List in all namespaces")
@click.option("--selector", "-l", default=None, help="Label selector (k=v,...)")
@click.option("--api-version", default=None, help="apiVersion of the kind")
@click.option(
    "--output", "-o", type=click.Choice(["table", "json", "yaml"]), default="table"
)
def get(kind, namespace, all_namespaces, selector, api_version, output):
    """List objects of a kind"""
    client = TraitControllerCLI()
    kind = resolve_kind(kind)

    params = {"apiVersion": client.api_version_for(kind, api_version), "kind": kind}
    if not all_namespaces and KNOWN_KINDS.get(kind, ("", True))[1]:
        params["namespace"] = namespace
    if selector:
        params["labelSelector"] = selector

    result = client._make_request("GET", "/objects", params=params)
    if result is None:
        return

    items = result.get("items", [])
    if output == "json":
        click.echo(json.dumps(items, indent=2))
    elif output == "yaml":
        click.echo(yaml.dump(items, default_flow_style=False))
    elif not items:
        click.echo(f"No {kind} objects found")
    else:
        headers = ["Namespace", "Name", "Generation", "Synced", "Created"]
        rows = []
        for item in items:
            metadata = item["metadata"]
            synced = next(
                (
                    c.get("status", "")
                    for c in item.get("status", {}).get("conditions", [])
                    if c.get("type") == "Synced"
                ),
                "",
            )
            rows.append(
                [
                    metadata.get("namespace", ""),
                    metadata["name"],
                    metadata.get("generation", ""),
                    synced,
                    metadata.get("creationTimestamp", ""),
                ]
            )
        click.echo(tabulate(rows, headers=headers, tablefmt="grid"))


@cli.command()
@click.argument("kind")
@click.argument("name")
@click.option("--namespace", "-n", default="default", help="Namespace")
@click.option("--api-version", default=None, help="apiVersion of the kind")
@click.option("--output", "-o", type=click.Choice(["json", "yaml"]), default="yaml")
def describe(kind, name, namespace, api_version, output):
    """Describe a specific object"""
    client = TraitControllerCLI()
    kind = resolve_kind(kind)

    result = client._make_request(
        "GET",
        client.object_path(kind, name, namespace),
        params={"apiVersion": client.api_version_for(kind, api_version)},
    )

    if result:
        if output == "yaml":
            click.echo(yaml.dump(result, default_flow_style=False))
        else:
            click.echo(json.dumps(result, indent=2))


@cli.command()
@click.argument("kind")
@click.argument("name")
@click.option("--namespace", "-n", default="default", help="Namespace")
@click.option("--api-version", default=None, help="apiVersion of the kind")
@click.confirmation_option(prompt="Are you sure you want to delete this object?")
def delete(kind, name, namespace, api_version):
    """Delete an object"""
    client = TraitControllerCLI()
    kind = resolve_kind(kind)

    result = client._make_request(
        "DELETE",
        client.object_path(kind, name, namespace),
        params={"apiVersion": client.api_version_for(kind, api_version)},
    )

    if result:
        click.echo(f"{kind}/{name} deleted")


@cli.command()
@click.argument("kind")
@click.argument("name")
@click.option("--namespace", "-n", default="default", help="Namespace")
@click.option("--api-version", default=None, help="apiVersion of the kind")
def reconcile(kind, name, namespace, api_version):
    """Manually trigger reconciliation of an object"""
    client = TraitControllerCLI()
    kind = resolve_kind(kind)

    result = client._make_request(
        "POST",
        client.object_path(kind, name, namespace) + "/reconcile",
        params={"apiVersion": client.api_version_for(kind, api_version)},
    )

    if result:
        click.echo("Reconciliation triggered successfully")


@cli.command()
@click.argument("name")
@click.option("--namespace", "-n", default="default", help="Namespace")
@click.option("--follow", "-f", is_flag=True, help="Follow status updates")
@click.option("--interval", "-i", default=5, help="Polling interval in seconds")
def status(name, namespace, follow, interval):
    """Show the conditions and Services of a ServiceTrait"""
    client = TraitControllerCLI()

    def show_status():
        result = client._make_request(
            "GET",
            client.object_path("ServiceTrait", name, namespace),
            params={"apiVersion": OAM_API_VERSION},
        )
        if not result:
            return
        if follow:
            click.clear()

        metadata = result["metadata"]
        workload = result.get("spec", {}).get("workloadRef", {})
        click.echo(f"ServiceTrait: {metadata['name']}")
        click.echo(f"Namespace: {metadata.get('namespace', '')}")
        click.echo(
            f"Workload: {workload.get('kind', '')}/{workload.get('name', '')} "
            f"({workload.get('apiVersion') or 'no apiVersion'})"
        )
        click.echo(f"Generation: {metadata.get('generation')}")

        rows = format_conditions(result)
        if rows:
            click.echo("\nConditions:")
            headers = ["Type", "Status", "Reason", "Message", "Last Transition"]
            click.echo(tabulate(rows, headers=headers, tablefmt="grid"))

        resources = result.get("status", {}).get("resources", [])
        click.echo(f"\nServices ({len(resources)}):")
        for ref in resources:
            click.echo(
                f"  - {ref.get('kind')}/{ref.get('name')} (uid {ref.get('uid')})"
            )

        synced = [r for r in rows if r[0] == "Synced"]
        if synced and synced[0][1] == "True":
            click.echo("\n✓ ServiceTrait is synced")
        elif synced:
            click.echo("\n⚠️  ServiceTrait is not synced, retrying")

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
