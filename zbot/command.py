# Copyright (c) 2021 MobileCoin Inc.
# Copyright (c) 2021 The Forest Team
"""
Commands and handlers, and the Shapes commands can be phrased in.

A Shape is a few regexes with a named `self` group (the bot's name), a named
`cmd` group (the command label) and numbered `arg0`, `arg1`... groups.
"""
import enum
import inspect
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Iterable, Optional

from zbot.message import Notice
from zbot.utils import logging

if TYPE_CHECKING:
    from zbot.core import State

Action = Callable[["State", Notice, "CommandMatch"], Any]
HandlerAction = Callable[["State", Notice], Any]


async def maybe_await(result: Any) -> Any:
    "actions can be plain functions or coroutine functions"
    if inspect.isawaitable(result):
        return await result
    return result


class Scope(enum.Enum):
    """
    LOCAL commands only answer on the bot's current class and instance,
    EVERYWHERE and SECRET commands answer wherever they're heard.
    SECRET is a tag for actions that shouldn't say where they were invoked from.
    """

    LOCAL = "local"
    EVERYWHERE = "everywhere"
    SECRET = "secret"


@dataclass
class CommandMatch:
    referent: str
    command: str
    args: list[str] = field(default_factory=list)


class Shape:
    def __init__(self, name: str, *patterns: str) -> None:
        self.name = name
        self.patterns = [re.compile(pattern) for pattern in patterns]

    def __repr__(self) -> str:
        return f"<Shape {self.name}>"

    def match(
        self, expected_referent: str, expected_labels: Iterable[str], text: str
    ) -> Optional[CommandMatch]:
        """
        Returns the first pattern match addressed to expected_referent with
        a label in expected_labels. Patterns that match the text but name
        another bot or another command are skipped, not fatal.
        """
        labels = set(expected_labels)
        for pattern in self.patterns:
            found = pattern.search(text)
            if not found:
                continue
            if found.group("self") != expected_referent:
                continue
            if found.group("cmd") not in labels:
                continue
            args = []
            for index in range(pattern.groups):
                arg = found.groupdict().get(f"arg{index}")
                if arg is None:
                    break
                args.append(arg)
            return CommandMatch(found.group("self"), found.group("cmd"), args)
        return None

    @classmethod
    def order(cls) -> "Shape":
        return cls(
            "order",
            r"^(?P<self>\w+) *, *(?P<cmd>\w+) *[.!]?$",  # topy, sit!
            r"^(?P<cmd>\w+) *, *(?P<self>\w+) *[.!]?$",  # sit, topy!
        )

    @classmethod
    def unary_order(cls) -> "Shape":
        return cls(
            "unary_order",
            r"^(?P<self>\w+) *, *(?P<cmd>\w+) +(?P<arg0>\w+) *[.!]?$",  # topy, get x!
            r"^(?P<cmd>\w+) +(?P<arg0>\w+) *, *(?P<self>\w+) *[.!]?$",  # get x, topy!
        )

    @classmethod
    def invoke(cls) -> "Shape":
        return cls(
            "invoke",
            r"^(?P<self>\w+) *\((?P<cmd>[ \w]+)\)$",  # topy(pet)
            r"^(?P<cmd>[ \w]+)s +(?P<self>\w+)$",  # pets topy
            r"^(?P<self>\w+) *-> *\{(?P<cmd>[ \w]+)\}$",  # topy->{pet}
            r"^(?P<self>\w+) *(?:->|\.|#|::) *(?P<cmd>\w+)(?:\(\))?$",  # topy.pet, topy.pet()
        )

    @classmethod
    def unary_invoke(cls) -> "Shape":
        return cls(
            "unary_invoke",
            r"^(?P<self>\w+) *(?:->|\.|#|::) *(?P<cmd>\w+)(?:\( *(?P<arg0>[\w.-]+) *\))?$",  # topy.fetch(ball)
            r"^(?P<self>\w+) *(?:->|\.|#|::) *(?P<cmd>\w+)(?:\( *'(?P<arg0>[^']+)' *\))?$",  # topy.fetch('the ball')
        )

    @classmethod
    def binary_invoke(cls) -> "Shape":
        return cls(
            "binary_invoke",
            r"^(?P<self>\w+) *(?:->|\.|#|::) *(?P<cmd>\w+)"
            r"(?:\( *(?P<arg0>[\w.-]+) *, *(?P<arg1>[\w.-]+) *\))?$",  # topy.give(a, b)
            r"^(?P<self>\w+) *(?:->|\.|#|::) *(?P<cmd>\w+)"
            r"(?:\( *'(?P<arg0>[^']+)' *, *'(?P<arg1>[^']+)' *\))?$",  # topy.give('a b', 'c')
        )

    @classmethod
    def do_with(cls) -> "Shape":
        return cls(
            "do_with",
            r"(?:^\w+ +)?(?P<cmd>\w+) +(?P<self>\w+) +(?P<arg0>[ \w]+)[.!]?$",  # please pet topy gently
        )


class Command:
    """A Shape, a Scope, the labels it answers to, and what to do about it"""

    def __init__(
        self, shape: Shape, scope: Scope, labels: Iterable[str], action: Action
    ) -> None:
        self.shape = shape
        self.scope = scope
        self.labels = list(labels)
        self.action = action

    def __repr__(self) -> str:
        return f"<Command {'|'.join(self.labels)} {self.shape.name} {self.scope.value}>"

    def in_scope(self, state: "State", notice: Notice) -> bool:
        if self.scope is Scope.LOCAL:
            return (notice.class_, notice.instance) == (state.class_, state.instance)
        return True

    async def try_exec(self, state: "State", notice: Notice) -> bool:
        "run the action and return True if notice is this command, otherwise False"
        found = self.shape.match(state.name, self.labels, notice.text)
        if not found or not self.in_scope(state, notice):
            return False
        logging.info("running %s for %s", self, notice.sender)
        await maybe_await(self.action(state, notice, found))
        return True


class Handler:
    """Runs on every notice. The action returns whether it handled the notice"""

    def __init__(self, action: HandlerAction) -> None:
        self.action = action

    def __repr__(self) -> str:
        return f"<Handler {getattr(self.action, '__name__', self.action)}>"

    async def try_exec(self, state: "State", notice: Notice) -> bool:
        return bool(await maybe_await(self.action(state, notice)))
