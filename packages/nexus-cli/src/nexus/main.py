import asyncio
import json
import logging
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import typer
from rich import print
from rich.table import Table

from nexus import __version__
from nexus.config import get_settings
from nexus.coordination.client import CoordinationClient
from nexus.core.controller import WorkspaceController
from nexus.core.project import find_project_root, init_project
from nexus.errors import NexusError, ProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")

APP_HELP = """
nexus: isolated development workspaces, one per branch.

Each workspace is a git worktree under .nexus/worktrees/<name> with its own
session (a docker container or lxc instance). Service ports are published on
free host ports and written to the worktree's .env as NEXUS_SERVICE_<NAME>_URL.

CORE WORKFLOW:
1. SET UP:  Run `nexus init` in a git repository and describe services in
            .nexus/config.yaml.
2. CREATE:  Run `nexus workspace create <name>` to check out a worktree.
3. START:   Run `nexus workspace up <name>` to start its session and hooks.
4. WORK:    Run `nexus workspace shell <name>` or `nexus workspace services <name>`.
5. CLEAN:   Run `nexus workspace down <name>` and `nexus workspace rm <name>`.

REMOTE NODES:
`nexus server run` starts the coordination server; `nexus agent start` registers
this host with it; `nexus node` and `nexus command` inspect and drive nodes.
"""

app = typer.Typer(name="nexus", help=APP_HELP, no_args_is_help=True)
workspace_app = typer.Typer(name="workspace", help="Create, start, stop and remove workspaces.", no_args_is_help=True)
session_app = typer.Typer(name="session", help="Inspect and kill raw provider sessions.", no_args_is_help=True)
node_app = typer.Typer(name="node", help="Nodes registered with the coordination server.", no_args_is_help=True)
command_app = typer.Typer(name="command", help="Dispatch commands to nodes.", no_args_is_help=True)
server_app = typer.Typer(name="server", help="Run the coordination server.", no_args_is_help=True)
agent_app = typer.Typer(name="agent", help="Run this host as a node.", no_args_is_help=True)

app.add_typer(workspace_app, name="workspace")
app.add_typer(session_app, name="session")
app.add_typer(node_app, name="node")
app.add_typer(command_app, name="command")
app.add_typer(server_app, name="server")
app.add_typer(agent_app, name="agent")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log debug output"),
):
    logging.basicConfig(
        level=logging.DEBUG if verbose else get_settings().log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


@contextmanager
def handle_errors():
    """Render engine errors as one red line and exit 1."""
    try:
        yield
    except NexusError as e:
        print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)


def _controller() -> WorkspaceController:
    settings = get_settings()
    return WorkspaceController.from_cwd(hook_timeout=settings.hook_timeout)


def _coordination(call: Callable[[CoordinationClient], Awaitable[T]]) -> T:
    async def _go() -> T:
        async with CoordinationClient.from_settings() as client:
            return await call(client)

    return asyncio.run(_go())


def _parse_params(pairs: List[str]) -> Dict[str, Any]:
    params: Dict[str, Any] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"expected key=value, got {pair!r}")
        try:
            params[key] = json.loads(value)
        except ValueError:
            params[key] = value
    return params


# =============================================================================
# Project
# =============================================================================

@app.command()
def init(
    name: Optional[str] = typer.Option(None, "--name", "-n", help="Project name (default: directory name)"),
    provider: str = typer.Option("docker", "--provider", "-p", help="Default session provider"),
):
    """
    Scaffold .nexus/ in the current directory.

    Creates config.yaml, hooks/ and worktrees/. An existing config.yaml is kept.
    """
    root = Path.cwd()
    existing = find_project_root(root)
    if existing is not None and existing != root.resolve():
        print(f"[yellow]Note: already inside project at {existing}[/yellow]")

    path = init_project(root, name=name, provider=provider)
    print(f"[green]Initialized nexus project[/green] ({path})")
    print("[dim]Describe your services in .nexus/config.yaml, then run `nexus workspace create <name>`.[/dim]")


@app.command()
def version():
    """Show the installed version."""
    print(f"nexus {__version__}")


# =============================================================================
# Workspaces
# =============================================================================

@workspace_app.command("create")
def workspace_create(name: str = typer.Argument(..., help="Workspace (and branch) name")):
    """Create a worktree for NAME on the branch of the same name."""
    with handle_errors():
        path = _controller().create(name)
    print(f"[green]Created workspace {name}[/green] at {path}")


@workspace_app.command("up")
def workspace_up(name: Optional[str] = typer.Argument(None, help="Workspace name (default: current worktree)")):
    """
    Start the workspace session, write .env and run hooks.

    Running again on a running workspace only refreshes .env.
    """
    with handle_errors():
        controller = _controller()
        name = name or controller.detect_workspace()
        info = controller.up(name)
        mappings = controller.services(name)

    print(f"[green]Workspace {name} is {info.status}[/green] ({info.provider} session {info.session_id})")
    if mappings:
        table = Table(title="Services")
        table.add_column("Service", style="cyan")
        table.add_column("Port", justify="right")
        table.add_column("URL", style="green")
        for m in mappings:
            table.add_row(m.service, f"{m.internal_port} -> {m.external_port}", m.url)
        print(table)


@workspace_app.command("down")
def workspace_down(name: Optional[str] = typer.Argument(None, help="Workspace name (default: current worktree)")):
    """Run the teardown hook and destroy the workspace session. The worktree is kept."""
    with handle_errors():
        controller = _controller()
        name = name or controller.detect_workspace()
        session = controller.down(name)
    print(f"[green]Stopped workspace {name}[/green] (session {session.id})")


@workspace_app.command("rm")
def workspace_rm(
    name: str = typer.Argument(..., help="Workspace name"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
):
    """Destroy the session (if any) and delete the worktree."""
    if not yes:
        typer.confirm(f"Remove workspace {name} and its worktree?", abort=True)
    with handle_errors():
        _controller().remove(name)
    print(f"[green]Removed workspace {name}[/green]")


@workspace_app.command("list")
def workspace_list(
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """List workspaces of this project with their status."""
    with handle_errors():
        infos = _controller().list()

    if json_output:
        typer.echo(json.dumps([
            {
                "name": i.name,
                "status": i.status,
                "path": str(i.path) if i.path else None,
                "provider": i.provider,
                "session_id": i.session_id,
                "services": {str(k): v for k, v in i.services.items()},
            }
            for i in infos
        ], indent=2))
        return

    if not infos:
        print("[yellow]No workspaces. Create one with `nexus workspace create <name>`.[/yellow]")
        return

    colors = {"running": "green", "stopped": "yellow", "created": "blue"}
    table = Table(title="Workspaces")
    table.add_column("Name", style="cyan")
    table.add_column("Status")
    table.add_column("Provider")
    table.add_column("Session")
    table.add_column("Ports")
    for i in infos:
        color = colors.get(i.status, "red")
        ports = ", ".join(f"{k}->{v}" for k, v in sorted(i.services.items()))
        table.add_row(i.name, f"[{color}]{i.status}[/{color}]", i.provider or "-", i.session_id or "-", ports or "-")
    print(table)


@workspace_app.command("services")
def workspace_services(name: Optional[str] = typer.Argument(None, help="Workspace name (default: current worktree)")):
    """Show the published service URLs of a running workspace."""
    with handle_errors():
        controller = _controller()
        name = name or controller.detect_workspace()
        mappings = controller.services(name)

    if not mappings:
        print(f"[yellow]Workspace {name} publishes no services.[/yellow]")
        return
    table = Table(title=f"Services of {name}")
    table.add_column("Service", style="cyan")
    table.add_column("Internal", justify="right")
    table.add_column("External", justify="right")
    table.add_column("URL", style="green")
    for m in mappings:
        table.add_row(m.service, str(m.internal_port), str(m.external_port), m.url)
    print(table)


@workspace_app.command("shell")
def workspace_shell(name: Optional[str] = typer.Argument(None, help="Workspace name (default: current worktree)")):
    """Open an interactive shell in the workspace session."""
    with handle_errors():
        controller = _controller()
        name = name or controller.detect_workspace()
        try:
            result = controller.shell(name)
        except ProviderError as e:
            # the shell's own exit status, not an engine failure
            raise typer.Exit(code=e.returncode or 1)
    raise typer.Exit(code=result.returncode)


@workspace_app.command("exec")
def workspace_exec(
    name: str = typer.Argument(..., help="Workspace name"),
    cmd: List[str] = typer.Argument(..., help="Command to run (put it after --)"),
    env: List[str] = typer.Option([], "--env", "-e", help="KEY=VALUE to set, repeatable"),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Seconds before the command is killed"),
):
    """Run a command in the workspace session and print its output."""
    variables = {}
    for pair in env:
        key, sep, value = pair.partition("=")
        if not sep:
            raise typer.BadParameter(f"expected KEY=VALUE, got {pair!r}")
        variables[key] = value

    with handle_errors():
        try:
            result = _controller().exec(name, cmd, env=variables, timeout=timeout)
        except ProviderError as e:
            if e.returncode is None:
                raise
            if e.output:
                typer.echo(e.output, nl=False)
            raise typer.Exit(code=e.returncode)
    if result.stdout:
        typer.echo(result.stdout, nl=False)


# =============================================================================
# Sessions
# =============================================================================

@session_app.command("list")
def session_list():
    """List every nexus-labelled session across providers."""
    with handle_errors():
        sessions = _controller().sessions()

    if not sessions:
        print("[yellow]No sessions.[/yellow]")
        return
    table = Table(title="Sessions")
    table.add_column("ID", style="cyan")
    table.add_column("Identity")
    table.add_column("Provider")
    table.add_column("Status")
    table.add_column("Ports")
    for s in sessions:
        ports = ", ".join(f"{k}->{v}" for k, v in sorted(s.services.items()))
        table.add_row(s.id, s.identity or "-", s.provider, s.status.value, ports or "-")
    print(table)


@session_app.command("kill")
def session_kill(ref: str = typer.Argument(..., help="Session ID, ID prefix or identity")):
    """Destroy a session directly, bypassing hooks."""
    with handle_errors():
        session = _controller().kill(ref)
    print(f"[green]Killed session {session.id}[/green] ({session.identity or 'unlabelled'})")


# =============================================================================
# Nodes
# =============================================================================

@node_app.command("list")
def node_list(
    label: Optional[str] = typer.Option(None, "--label", "-l", help="Filter by label key=value"),
    capability: Optional[str] = typer.Option(None, "--capability", "-c", help="Filter by capability"),
    status: Optional[str] = typer.Option(None, "--status", "-s", help="Filter by status"),
):
    """List nodes registered with the coordination server."""
    with handle_errors():
        nodes = _coordination(lambda c: c.list_nodes(label=label, capability=capability, status=status))

    if not nodes:
        print("[yellow]No nodes registered.[/yellow]")
        return
    colors = {"online": "green", "busy": "yellow", "draining": "yellow", "stale": "red", "offline": "red"}
    table = Table(title="Nodes")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("Provider")
    table.add_column("Address")
    table.add_column("Last seen")
    for n in nodes:
        color = colors.get(n["status"], "white")
        address = f"{n['address']}:{n['port']}" if n.get("address") else "(polling)"
        table.add_row(n["id"], n["name"], f"[{color}]{n['status']}[/{color}]", n["provider"], address, n["last_seen"])
    print(table)


@node_app.command("get")
def node_get(node_id: str = typer.Argument(..., help="Node ID")):
    """Show one node as JSON."""
    with handle_errors():
        node = _coordination(lambda c: c.get_node(node_id))
    typer.echo(json.dumps(node, indent=2))


@node_app.command("rm")
def node_rm(node_id: str = typer.Argument(..., help="Node ID")):
    """Unregister a node."""
    with handle_errors():
        _coordination(lambda c: c.unregister_node(node_id))
    print(f"[green]Unregistered node {node_id}[/green]")


@node_app.command("services")
def node_services():
    """List services declared by all nodes."""
    with handle_errors():
        listing = _coordination(lambda c: c.list_services())

    entries = listing.get("entries", [])
    if not entries:
        print("[yellow]No services declared.[/yellow]")
        return
    table = Table(title="Services")
    table.add_column("Node", style="cyan")
    table.add_column("Service")
    table.add_column("Status")
    table.add_column("Endpoint", style="green")
    for entry in entries:
        svc = entry["service"]
        table.add_row(entry["node_id"], svc.get("name") or svc.get("id", ""), svc.get("status", ""), svc.get("endpoint", ""))
    print(table)


# =============================================================================
# Commands
# =============================================================================

def _print_command(command: Dict[str, Any]) -> None:
    colors = {"success": "green", "failed": "red", "timed_out": "red", "pending": "yellow"}
    color = colors.get(command["status"], "white")
    print(f"Command {command['id']} on {command['node_id']}: [{color}]{command['status']}[/{color}]")
    if command.get("output"):
        typer.echo(command["output"])
    if command.get("error"):
        print(f"[red]{command['error']}[/red]")


@command_app.command("send")
def command_send(
    node_id: str = typer.Argument(..., help="Target node ID"),
    action: str = typer.Argument(..., help="Action, e.g. create, start, exec, info"),
    command_type: str = typer.Option("session", "--type", "-t", help="session, service or system"),
    target: str = typer.Option("", "--target", help="Session or service the action applies to"),
    param: List[str] = typer.Option([], "--param", "-p", help="key=value parameter, repeatable"),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Seconds before the command times out"),
    wait: bool = typer.Option(False, "--wait", "-w", help="Wait for the result"),
):
    """
    Dispatch a command to a node.

    Examples:
        nexus command send node-1 info --type system --wait
        nexus command send node-1 create -p session_id=demo -p workspace_path=/srv/demo
        nexus command send node-1 exec -p session_id=demo -p command="ls -la" --wait
    """
    params = _parse_params(param)

    with handle_errors():
        command = _coordination(
            lambda c: c.send_command(
                node_id, action, type=command_type, target=target, params=params, timeout=timeout
            )
        )
        print(f"[green]Dispatched {command['id']}[/green] ({command['delivery']})")
        if not wait:
            return

        deadline = time.monotonic() + (command.get("timeout") or 300) + 5
        while command["status"] == "pending" and time.monotonic() < deadline:
            time.sleep(1.0)
            command = _coordination(lambda c: c.get_command(command["id"]))

    _print_command(command)
    if command["status"] != "success":
        raise typer.Exit(code=1)


@command_app.command("status")
def command_status(command_id: str = typer.Argument(..., help="Command ID")):
    """Show a command's status and result."""
    with handle_errors():
        command = _coordination(lambda c: c.get_command(command_id))
    _print_command(command)


@command_app.command("list")
def command_list(
    node_id: Optional[str] = typer.Option(None, "--node", "-n", help="Only commands for this node"),
    status: Optional[str] = typer.Option(None, "--status", "-s", help="Filter by status"),
    limit: int = typer.Option(20, "--limit", help="Maximum rows"),
):
    """List recent commands, newest first."""
    with handle_errors():
        commands = _coordination(lambda c: c.list_commands(node_id=node_id, status=status, limit=limit))

    if not commands:
        print("[yellow]No commands.[/yellow]")
        return
    table = Table(title="Commands")
    table.add_column("ID", style="cyan")
    table.add_column("Node")
    table.add_column("Action")
    table.add_column("Status")
    table.add_column("Created")
    for cmd in commands:
        table.add_row(cmd["id"], cmd["node_id"], f"{cmd['type']}.{cmd['action']}", cmd["status"], cmd["created_at"])
    print(table)


# =============================================================================
# Coordination server
# =============================================================================

@server_app.command("run")
def server_run(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address (default: COORD_HOST or 0.0.0.0)"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Listen port (default: COORD_PORT or 3001)"),
):
    """Run the coordination server in the foreground."""
    from backend.src.api.main import run_server

    run_server(host=host, port=port)


# =============================================================================
# Node agent
# =============================================================================

@agent_app.command("start")
def agent_start(
    foreground: bool = typer.Option(False, "--foreground", "-f", help="Run in foreground (blocking)"),
):
    """
    Start the node agent.

    The agent registers this host with NEXUS_COORDINATION_URL, heartbeats,
    and runs dispatched commands. Set NEXUS_AGENT_ADVERTISE_ADDRESS to
    receive commands by push; without it the agent polls.
    """
    from nexus.agent.manager import AgentManager

    manager = AgentManager()
    result = manager.start(foreground=foreground)

    if result["success"]:
        print(f"[green]{result['message']}[/green]")
        if result.get("pid"):
            print(f"PID: {result['pid']}")
            print(f"[dim]Log file: {manager.log_file}[/dim]")
    else:
        print(f"[red]{result['message']}[/red]")
        raise typer.Exit(code=1)


@agent_app.command("stop")
def agent_stop():
    """Stop the node agent. It unregisters itself on the way out."""
    from nexus.agent.manager import AgentManager

    result = AgentManager().stop()
    if result["success"]:
        print(f"[green]{result['message']}[/green]")
    else:
        print(f"[yellow]{result['message']}[/yellow]")
        raise typer.Exit(code=1)


@agent_app.command("status")
def agent_status():
    """Show whether the node agent is running and registered."""
    from nexus.agent.manager import AgentManager

    status = AgentManager().status()
    if status["running"]:
        registered = "[green]registered[/green]" if status.get("registered") else "[yellow]not registered[/yellow]"
        print(f"[green]Agent running[/green] (pid {status.get('pid')}, port {status['port']})")
        print(f"Node: {status.get('node_id')} - {registered} ({status.get('mode')})")
    else:
        print(f"[yellow]{status.get('message', 'Agent not running')}[/yellow]")


if __name__ == "__main__":
    app()
