# src/hashiprov/observers/console.py
import typer

from .events import BaseEvent, StepFailed, StepSucceeded

_CONTEXT_KEYS = ("ts", "run_id", "host")


class ConsoleObserver:
    """One line per event; step results are coloured."""

    def notify(self, event: BaseEvent) -> None:
        d = event.dict()
        k = event.__class__.__name__
        data = ", ".join(f"{x}={y}" for x, y in d.items() if x not in _CONTEXT_KEYS)
        line = f"[{d['ts']}] {d['host']} {k} {data}"

        if isinstance(event, StepFailed):
            typer.secho(line, fg=typer.colors.RED, err=True)
        elif isinstance(event, StepSucceeded):
            typer.secho(line, fg=typer.colors.YELLOW if event.changed else typer.colors.GREEN)
        else:
            typer.echo(line)
