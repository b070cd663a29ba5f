import typer
import requests
from dotenv import load_dotenv
import os
import json
import yaml
from typing import Optional

load_dotenv()

app = typer.Typer(name="harbormaster", help="Harbormaster deployment CLI")

API_URL = os.getenv("HARBORMASTER_API_URL", "http://localhost:3000").rstrip("/")

# Deployments block until every instance is healthy or rolled back
DEPLOY_TIMEOUT = int(os.getenv("HARBORMASTER_DEPLOY_TIMEOUT", "900"))


def call_api(method: str, path: str, timeout: int = 30, **kwargs) -> dict:
    """Call the controller API and exit with a message on any error."""
    try:
        response = requests.request(method, f"{API_URL}{path}", timeout=timeout, **kwargs)
    except requests.exceptions.ConnectionError:
        typer.echo(f"Harbormaster controller is not reachable at {API_URL}", err=True)
        typer.echo("Start it with: harbormaster-controller", err=True)
        raise typer.Exit(1)
    except requests.exceptions.Timeout:
        typer.echo(f"Harbormaster controller did not answer within {timeout}s", err=True)
        raise typer.Exit(1)

    try:
        body = response.json()
    except ValueError:
        body = {"error": response.text or f"HTTP {response.status_code}"}

    if response.status_code >= 400 or body.get("error"):
        message = body.get("error") or body.get("detail") or f"HTTP {response.status_code}"
        typer.echo(f"Error: {message}", err=True)
        if body.get("fatal"):
            typer.echo("Rollback failed: registry and hosts may disagree, manual cleanup needed.", err=True)
        if body.get("instances"):
            typer.echo(f"Live instances: {', '.join(body['instances'])}", err=True)
        raise typer.Exit(1)
    return body


def echo_list(items):
    for item in items:
        typer.echo(item)


@app.command()
def apps():
    """List registered apps."""
    echo_list(call_api("GET", "/apps")["apps"])


@app.command("add-app")
def add_app(name: str):
    """Register an app."""
    call_api("POST", "/apps", json={"app": name})
    typer.echo(f"Added app {name}")


@app.command("remove-app")
def remove_app(name: str):
    """Unregister an app."""
    call_api("DELETE", f"/apps/{name}")
    typer.echo(f"Removed app {name}")


@app.command()
def hosts():
    """List hosts in the scheduling pool."""
    echo_list(call_api("GET", "/hosts")["hosts"])


@app.command("add-host")
def add_host(host: str):
    """Add a Docker host to the scheduling pool."""
    call_api("POST", "/hosts", json={"host": host})
    typer.echo(f"Added host {host}")


@app.command("remove-host")
def remove_host(host: str):
    """Remove a host from the scheduling pool."""
    call_api("DELETE", f"/hosts/{host}")
    typer.echo(f"Removed host {host}")


@app.command()
def deploy(name: str, image: str, count: Optional[int] = typer.Option(None, "--count", "-c", min=1)):
    """Deploy IMAGE for app NAME and retire the previous instances."""
    payload = {"image": image}
    if count is not None:
        payload["count"] = count
    typer.echo(f"Deploying {image} to {name}...")
    result = call_api("POST", f"/{name}/deploy", json=payload, timeout=DEPLOY_TIMEOUT)
    typer.echo(f"Deployed {len(result['instances'])} instance(s):")
    echo_list(result["instances"])
    if result.get("retired"):
        typer.echo(f"Retired {len(result['retired'])} previous instance(s)")


@app.command()
def instances(name: str):
    """List live instances of an app."""
    echo_list(call_api("GET", f"/{name}/instances")["instances"])


@app.command()
def history(name: str):
    """Show deployment history of an app."""
    for record in call_api("GET", f"/{name}/history")["history"]:
        typer.echo(f"{record['timestamp']}  {record['image']}  x{record['count']}")


@app.command()
def envs(name: str):
    """List environment variables of an app."""
    echo_list(call_api("GET", f"/{name}/envs")["envs"])


@app.command("set-env")
def set_env(name: str, env: str):
    """Add a KEY=VALUE environment variable to an app."""
    if "=" not in env:
        typer.echo("Environment variables must look like KEY=VALUE", err=True)
        raise typer.Exit(1)
    call_api("POST", f"/{name}/envs", json={"env": env})
    typer.echo(f"Set {env.split('=', 1)[0]} for {name}")


@app.command("unset-env")
def unset_env(name: str, key: str):
    """Remove every value stored for KEY."""
    result = call_api("DELETE", f"/{name}/envs/{key}")
    typer.echo(f"Removed {len(result.get('removed', []))} entr(ies) for {key}")


@app.command()
def logs(name: str):
    """Print container logs of every live instance."""
    for instance, text in call_api("GET", f"/{name}/logs", timeout=120)["logs"].items():
        typer.echo(f"==> {instance} <==")
        typer.echo(text)


@app.command()
def kill(name: str, yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation")):
    """Tear down every instance of an app."""
    if not yes:
        typer.confirm(f"Kill all instances of {name}?", abort=True)
    result = call_api("POST", f"/{name}/kill", timeout=120)
    typer.echo(f"Killed {len(result.get('killed', []))} instance(s)")


@app.command()
def describe(as_json: bool = typer.Option(False, "--json", help="Print JSON instead of YAML")):
    """Describe all apps."""
    description = call_api("GET", "/describe", timeout=120)["description"]
    if as_json:
        typer.echo(json.dumps(description, indent=2))
    else:
        typer.echo(yaml.dump(description, default_flow_style=False))


@app.command()
def info():
    """Show controller status."""
    try:
        response = requests.get(f"{API_URL}/health", timeout=5)
        if response.status_code == 200:
            typer.echo("Harbormaster controller: Running")
            typer.echo(f"   API: {API_URL}")
            typer.echo(f"   Version: {response.json().get('version')}")
        else:
            typer.echo("Harbormaster controller: Not healthy")
    except requests.exceptions.ConnectionError:
        typer.echo("Harbormaster controller: Not running")
    except requests.exceptions.RequestException as e:
        typer.echo(f"Error checking status: {e}")


if __name__ == "__main__":
    app()
