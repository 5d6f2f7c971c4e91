"""Human decision points: confirmations, free text and pickers.

Every prompt returns an ``Answer``. Dismissing a prompt (Ctrl-C, EOF, an
empty pick) yields ``Answer.cancelled()`` rather than raising, so callers
handle cancellation as an ordinary outcome.
"""

from collections import deque
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Generic, Protocol, TypeVar

import click
from rich.console import Console
from rich.markup import escape

T = TypeVar("T")


@dataclass(frozen=True)
class Answer(Generic[T]):
    """Result of a prompt: a value, or an explicit cancellation."""

    value: T | None = None
    is_cancelled: bool = False

    @classmethod
    def of(cls, value: T) -> "Answer[T]":
        return cls(value=value)

    @classmethod
    def cancelled(cls) -> "Answer[T]":
        return cls(is_cancelled=True)


class Prompter(Protocol):
    def confirm(self, message: str) -> Answer[bool]: ...

    def text(self, message: str) -> Answer[str]: ...

    def select(self, message: str, choices: Sequence[str]) -> Answer[str]: ...


class ClickPrompter:
    """Interactive prompts on the terminal."""

    def __init__(self, console: Console | None = None):
        self.console = console or Console(stderr=True)

    def confirm(self, message: str) -> Answer[bool]:
        try:
            return Answer.of(click.confirm(message, default=False))
        except click.Abort:
            return Answer.cancelled()

    def text(self, message: str) -> Answer[str]:
        try:
            value = click.prompt(message, default="", show_default=False)
        except click.Abort:
            return Answer.cancelled()
        return Answer.of(value)

    def select(self, message: str, choices: Sequence[str]) -> Answer[str]:
        if not choices:
            return Answer.cancelled()
        self.console.print(f"[bold]{escape(message)}[/bold]")
        for number, choice in enumerate(choices, start=1):
            self.console.print(f"  [cyan]{number:>3}[/cyan]  {escape(choice)}")
        try:
            picked = click.prompt(
                "Choice (blank to skip)",
                default="",
                show_default=False,
                type=str,
            )
        except click.Abort:
            return Answer.cancelled()
        picked = picked.strip()
        if not picked:
            return Answer.cancelled()
        if picked.isdigit() and 1 <= int(picked) <= len(choices):
            return Answer.of(choices[int(picked) - 1])
        if picked in choices:
            return Answer.of(picked)
        self.console.print(f"[yellow]Not a valid choice: {escape(picked)}[/yellow]")
        return self.select(message, choices)


class ScriptedPrompter:
    """Replays queued answers in order. ``None`` in the queue means the prompt was dismissed."""

    def __init__(self, answers: Iterable[object] = ()):
        self.answers: deque[object] = deque(answers)
        self.asked: list[str] = []

    def _next(self, message: str) -> Answer:
        self.asked.append(message)
        if not self.answers:
            return Answer.cancelled()
        value = self.answers.popleft()
        if value is None:
            return Answer.cancelled()
        return Answer.of(value)

    def confirm(self, message: str) -> Answer[bool]:
        return self._next(message)

    def text(self, message: str) -> Answer[str]:
        return self._next(message)

    def select(self, message: str, choices: Sequence[str]) -> Answer[str]:
        answer = self._next(message)
        if not answer.is_cancelled and answer.value not in choices:
            raise ValueError(f"Scripted answer {answer.value!r} is not one of {list(choices)}")
        return answer
