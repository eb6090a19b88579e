"""kubesim command-line interface.

Commands:
    kubesim version                                 Print version and exit.
    kubesim scenarios                               List built-in scenarios.
    kubesim run SCENARIO [-c CMD ...] [--ticks N]   Apply commands, then tick.
    kubesim shell SCENARIO                          Interactive session.

Configuration comes from ``KUBESIM_*`` environment variables. Logs go to
stderr as JSON; everything a learner reads goes to stdout.
"""

from __future__ import annotations

import json
from typing import Any

import click

from kubesim import __version__
from kubesim.commands.render import render_events
from kubesim.config import load_config
from kubesim.engine.simulation import Simulation, TickResult
from kubesim.errors import ScenarioNotFoundError
from kubesim.models.config import KubesimConfig
from kubesim.models.events import EventType, SimEvent
from kubesim.observability.logging import setup_logging
from kubesim.scenarios import get_scenario, list_scenarios

# ---------------------------------------------------------------------------
# Colour helpers
# ---------------------------------------------------------------------------

_EVENT_COLORS: dict[str, str] = {
    EventType.NORMAL.value: "green",
    EventType.WARNING.value: "yellow",
}

_SHELL_HELP = """\
  <kubectl command>   apply a command, e.g. kubectl get pods
  tick [N]            run N reconciliation ticks (default 1)
  goals               show goal progress
  events              show recent events
  exit                leave the shell"""


def _styled_event(event: SimEvent) -> str:
    color = _EVENT_COLORS.get(event.type.value, "white")
    kind = click.style(event.type.value, fg=color, bold=True)
    return f"  [{kind}] {event.object_kind}/{event.object_name} {event.reason}: {event.message}"


def _styled_goal(description: str, done: bool) -> str:
    mark = click.style("[x]", fg="green", bold=True) if done else click.style("[ ]", fg="bright_black")
    return f"  {mark} {description}"


# ---------------------------------------------------------------------------
# Output helpers
# ---------------------------------------------------------------------------


def _new_simulation(config: KubesimConfig, name: str) -> Simulation:
    try:
        scenario = get_scenario(name)
    except ScenarioNotFoundError as exc:
        raise click.ClickException(str(exc)) from exc
    return Simulation(scenario, config)


def _echo_command(text: str, output: str, ok: bool) -> None:
    click.echo(click.style(f"$ {text}", bold=True))
    if output:
        click.echo(output if ok else click.style(output, fg="red"))


def _echo_tick(result: TickResult) -> None:
    header = f"tick {result.tick}"
    if result.converged:
        click.echo(click.style(f"{header}: converged", fg="bright_black"))
        return
    click.echo(click.style(header, bold=True) + f"  {len(result.events)} event(s), {len(result.mutations)} change(s)")
    for event in result.events:
        click.echo(_styled_event(event))


def _echo_goals(sim: Simulation) -> None:
    scenario = sim.scenario
    if scenario is None:
        return
    progress = sim.goals
    click.echo(click.style("Goals:", bold=True))
    if not scenario.goals:
        click.echo(_styled_goal(scenario.description or scenario.name, progress.done))
        return
    for goal, done in zip(scenario.goals, progress.completed, strict=True):
        click.echo(_styled_goal(goal.description, done))
    if progress.done:
        click.echo(click.style("Scenario complete.", fg="green", bold=True))


def _summary(sim: Simulation, transcript: list[dict[str, Any]]) -> dict[str, Any]:
    scenario = sim.scenario
    goals = scenario.goals if scenario is not None else []
    return {
        "scenario": scenario.name if scenario is not None else "",
        "tick": sim.state.tick,
        "complete": sim.complete,
        "goals": [
            {"description": g.description, "done": done}
            for g, done in zip(goals, sim.goals.completed, strict=True)
        ],
        "commands": transcript,
        "state": sim.state.to_dict(),
    }


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.pass_context
def cli(ctx: click.Context) -> None:
    """kubesim - a deterministic Kubernetes control-plane simulator."""
    try:
        config = load_config()
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    setup_logging(config.log.level)
    ctx.ensure_object(dict)
    ctx.obj["config"] = config


# ---------------------------------------------------------------------------
# kubesim version
# ---------------------------------------------------------------------------


@cli.command("version")
def cmd_version() -> None:
    """Print the kubesim version and exit."""
    click.echo(f"kubesim {__version__}")


# ---------------------------------------------------------------------------
# kubesim scenarios
# ---------------------------------------------------------------------------


@cli.command("scenarios")
def cmd_scenarios() -> None:
    """List the built-in scenarios."""
    for scenario in list_scenarios():
        click.echo(click.style(scenario.name, bold=True))
        if scenario.description:
            click.echo(f"  {scenario.description}")


# ---------------------------------------------------------------------------
# kubesim run
# ---------------------------------------------------------------------------


@cli.command("run")
@click.argument("scenario")
@click.option(
    "--command",
    "-c",
    "commands",
    multiple=True,
    metavar="CMD",
    help="kubectl command applied before ticking.  Repeatable.",
)
@click.option(
    "--ticks",
    type=click.IntRange(min=0),
    default=None,
    metavar="N",
    help="Maximum ticks to run.  Defaults to KUBESIM_MAX_TICKS.",
)
@click.option(
    "--json",
    "output_json",
    is_flag=True,
    default=False,
    help="Print a JSON summary including the final cluster state.",
)
@click.pass_context
def cmd_run(
    ctx: click.Context,
    scenario: str,
    commands: tuple[str, ...],
    ticks: int | None,
    output_json: bool,
) -> None:
    """Apply CMDs to SCENARIO, then reconcile until its goals are met.

    Exits with status 1 when the tick budget runs out first.

    Example:

        kubesim run cluster-autoscaling -c "kubectl scale deployment web --replicas=5"
    """
    sim = _new_simulation(ctx.obj["config"], scenario)

    transcript: list[dict[str, Any]] = []
    for text in commands:
        result = sim.execute(text)
        transcript.append({"command": text, "ok": result.ok, "output": result.output})
        if not output_json:
            _echo_command(text, result.output, result.ok)

    results = sim.run(ticks)

    if output_json:
        click.echo(json.dumps(_summary(sim, transcript), indent=2, default=str))
    else:
        for tick_result in results:
            _echo_tick(tick_result)
        click.echo("")
        _echo_goals(sim)

    if not sim.complete:
        ctx.exit(1)


# ---------------------------------------------------------------------------
# kubesim shell
# ---------------------------------------------------------------------------


def _shell_tick(sim: Simulation, arg: str) -> None:
    count = 1
    if arg:
        if not arg.isdigit():
            click.echo(click.style(f"Error: tick count must be a number, got {arg!r}", fg="red"))
            return
        count = int(arg)
    for _ in range(count):
        _echo_tick(sim.tick())


@cli.command("shell")
@click.argument("scenario")
@click.pass_context
def cmd_shell(ctx: click.Context, scenario: str) -> None:
    """Interactive session on SCENARIO.  Type "help" for commands."""
    sim = _new_simulation(ctx.obj["config"], scenario)
    click.echo(click.style(sim.scenario.name, bold=True) + f"  {sim.scenario.description}")
    _echo_goals(sim)

    while True:
        try:
            line = click.prompt("kubesim", default="", show_default=False, prompt_suffix="> ").strip()
        except click.Abort:
            click.echo("")
            break
        if not line:
            continue
        word, _, arg = line.partition(" ")
        if word in ("exit", "quit"):
            break
        if word == "help":
            click.echo(_SHELL_HELP)
        elif word == "tick":
            _shell_tick(sim, arg.strip())
        elif word == "goals":
            _echo_goals(sim)
        elif word == "events":
            click.echo(render_events(sim.state))
        else:
            result = sim.execute(line)
            if result.output:
                click.echo(result.output if result.ok else click.style(result.output, fg="red"))


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    cli()
