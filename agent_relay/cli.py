"""
agent-relay CLI - run the relay and talk to it from a terminal

Usage:
    agent-relay serve --port 4722
    agent-relay agents
    agent-relay run echo "explain this button"
    agent-relay echo-agent --agent-id echo
    agent-relay status
"""

import asyncio
import dataclasses
import json
import logging
import signal
import sys

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from . import __version__, protocol
from .agents import EchoAgent
from .api import fetch_status
from .config import RelayConfig, get_config
from .exceptions import ConfigError, RelayConnectionError, RelayError, SessionError
from .handler import AgentHandler, connect_relay
from .provider import AgentProvider
from .server import run_relay


console = Console()


def echo(message, style=None, markup=True):
    """Print message with optional rich styling."""
    console.print(message, style=style, markup=markup, highlight=False)


def fail(message):
    echo(f"Error: {message}", style="bold red", markup=False)
    sys.exit(1)


@click.group()
@click.option('--host', help='Relay host (default: AGENT_RELAY_HOST or localhost)')
@click.option('--port', '-p', type=int, help='Relay port (default: AGENT_RELAY_PORT or 4722)')
@click.option('--verbose', '-v', is_flag=True, help='Enable debug logging')
@click.pass_context
def cli(ctx, host, port, verbose):
    """agent-relay - connect browser overlays to local coding agents."""
    ctx.ensure_object(dict)

    try:
        cfg = get_config()
    except ConfigError as e:
        raise click.ClickException(str(e))

    overrides = {}
    if host:
        overrides['host'] = host
    if port is not None:
        overrides['port'] = port
    cfg = dataclasses.replace(cfg, **overrides)

    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, cfg.log_level, logging.INFO),
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
    )

    ctx.obj['config'] = cfg
    ctx.obj['verbose'] = verbose


@cli.command()
@click.option('--api-port', type=int, help='Status API port')
@click.option('--no-api', is_flag=True, help='Disable the status API')
@click.pass_context
def serve(ctx, api_port, no_api):
    """Run the relay server until interrupted."""
    cfg = ctx.obj['config']
    overrides = {'api_enabled': cfg.api_enabled and not no_api}
    if api_port is not None:
        overrides['api_port'] = api_port
    cfg = dataclasses.replace(cfg, **overrides)

    echo(f"[bold magenta]agent-relay[/bold magenta] {__version__}")
    echo(f"- Relay:  [cyan]{cfg.relay_url}[/cyan]")
    if cfg.api_enabled:
        echo(f"- Status: [cyan]{cfg.api_url}/health[/cyan]")

    try:
        asyncio.run(run_relay(cfg))
    except OSError as e:
        fail(f"Could not start relay on {cfg.host}:{cfg.port}: {e}")


@cli.command()
@click.option('--json', 'as_json', is_flag=True, help='Output as JSON')
@click.pass_context
def agents(ctx, as_json):
    """List agents registered with the relay."""
    cfg = ctx.obj['config']

    try:
        agent_ids = asyncio.run(_list_agents(cfg))
    except RelayConnectionError as e:
        fail(e)

    if as_json:
        click.echo(json.dumps(agent_ids))
        return

    if not agent_ids:
        echo("No agents registered", style="dim")
        return

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Agent ID")
    for agent_id in agent_ids:
        table.add_row(agent_id)
    console.print(table)


async def _list_agents(cfg: RelayConfig):
    async with AgentProvider(cfg.relay_url, connect_timeout=cfg.connect_timeout) as provider:
        return provider.list_agents()


@cli.command()
@click.argument('agent_id')
@click.argument('prompt')
@click.option('--context', 'context_json', help='JSON object passed to the agent')
@click.pass_context
def run(ctx, agent_id, prompt, context_json):
    """Send PROMPT to AGENT_ID and stream the reply."""
    cfg = ctx.obj['config']

    context = None
    if context_json:
        try:
            context = json.loads(context_json)
        except json.JSONDecodeError as e:
            raise click.BadParameter(f"invalid JSON: {e}", param_hint='--context')
        if not isinstance(context, dict):
            raise click.BadParameter("must be a JSON object", param_hint='--context')

    try:
        ok = asyncio.run(_run_prompt(cfg, agent_id, prompt, context))
    except SessionError as e:
        fail(f"relay could not serve the request ({e.reason})")
    except RelayConnectionError as e:
        fail(e)

    if not ok:
        sys.exit(1)


async def _run_prompt(cfg: RelayConfig, agent_id: str, prompt: str, context) -> bool:
    async with AgentProvider(cfg.relay_url, connect_timeout=cfg.connect_timeout) as provider:
        stream = await provider.run(agent_id, prompt, context)
        async for message in stream:
            if message.type == protocol.CONTENT:
                echo(message.content, markup=False)
            elif message.type == protocol.ERROR:
                echo(f"Agent error: {message.content}", style="bold red", markup=False)
                return False
            elif message.type == protocol.DONE:
                echo("done", style="dim green")
            else:
                echo(f"[{message.type}] {message.content}", style="dim", markup=False)
    return True


@cli.command('echo-agent')
@click.option('--agent-id', default='echo', show_default=True, help='Agent id to register')
@click.option('--delay', type=float, default=0.0, help='Seconds between streamed words')
@click.option('--no-host', is_flag=True, help='Fail instead of hosting a relay when none is running')
@click.pass_context
def echo_agent(ctx, agent_id, delay, no_host):
    """Connect the reference echo agent to the relay."""
    cfg = ctx.obj['config']

    try:
        asyncio.run(_serve_agent(cfg, EchoAgent(agent_id=agent_id, delay=delay),
                                 host_relay=not no_host))
    except RelayConnectionError as e:
        fail(e)


async def _serve_agent(cfg: RelayConfig, handler: AgentHandler, host_relay: bool):
    conn = await connect_relay(handler, host=cfg.host, port=cfg.port,
                               host_relay=host_relay, reconnect=not host_relay,
                               connect_timeout=cfg.connect_timeout)
    where = "hosting relay" if conn.hosted_server else "joined relay"
    echo(f"[bold magenta]{handler.agent_id}[/bold magenta] {where} at [cyan]{conn.url}[/cyan]")

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    stopped = asyncio.create_task(stop_event.wait())
    closed = asyncio.create_task(conn.wait_closed())
    await asyncio.wait({stopped, closed}, return_when=asyncio.FIRST_COMPLETED)
    for task in (stopped, closed):
        task.cancel()

    await conn.close()


@cli.command()
@click.option('--json', 'as_json', is_flag=True, help='Output as JSON')
@click.option('--api-port', type=int, help='Status API port')
@click.pass_context
def status(ctx, as_json, api_port):
    """Show relay status from the status API."""
    cfg = ctx.obj['config']
    if api_port is not None:
        cfg = dataclasses.replace(cfg, api_port=api_port)

    try:
        data = asyncio.run(fetch_status(cfg.api_url))
    except RelayConnectionError:
        echo(f"\nStatus API not reachable at {cfg.api_url}", style="yellow")
        sys.exit(1)
    except RelayError as e:
        fail(e)

    if as_json:
        click.echo(json.dumps(data, indent=2))
        return

    console.print(Panel.fit(
        "[bold blue]agent-relay status[/bold blue]",
        border_style="blue"
    ))
    console.print(f"\n[bold]Relay:[/bold] ws://{data.get('host')}:{data.get('port')}")
    console.print(f"[bold]Handler connections:[/bold] {data.get('handlers_connected', 0)}")
    console.print(f"[bold]Browser connections:[/bold] {data.get('browsers_connected', 0)}")

    handlers = data.get('handlers', [])
    if handlers:
        console.print(f"[bold]Agents:[/bold] {', '.join(handlers)}")
    else:
        console.print("\n[dim]No agents registered[/dim]")

    sessions = data.get('sessions', [])
    if sessions:
        console.print("\n[bold underline]Live Sessions[/bold underline]")
        table = Table(show_header=True, header_style="bold cyan")
        table.add_column("Session", style="dim")
        table.add_column("Agent")
        table.add_column("Kind")
        table.add_column("State")
        table.add_column("Messages")

        for s in sessions:
            state_style = "green" if s.get('state') == "streaming" else "yellow"
            table.add_row(
                s.get('session_id', ''),
                s.get('agent_id', ''),
                s.get('kind', ''),
                f"[{state_style}]{s.get('state', '')}[/{state_style}]",
                str(s.get('messages_forwarded', 0))
            )

        console.print(table)


@cli.command()
@click.pass_context
def config(ctx):
    """Show current configuration."""
    cfg = ctx.obj['config']
    click.echo("agent-relay configuration:")
    for key, value in cfg.as_dict().items():
        click.echo(f"  {key}: {value}")


@cli.command()
def version():
    """Show version information."""
    click.echo(f"agent-relay v{__version__}")


def main():
    """Main entry point."""
    load_dotenv()
    cli(obj={})


if __name__ == '__main__':
    main()
