#!/usr/bin/python3
# Copyright (c) 2021 MobileCoin Inc.
# Copyright (c) 2021 The Forest Team
"""
The core chatbot framework: State, Bot, Builder, and app
"""
import asyncio
import signal
import sys
import time
from typing import Any, Callable, Iterable, Optional, Type, TypeVar

import termcolor
from aiohttp import web
from prometheus_async import aio
from prometheus_client import Counter, Histogram

from zbot import utils
from zbot.command import Action, Command, Handler, HandlerAction, Scope, Shape
from zbot.message import MalformedNotice, Notice, Triplet
from zbot.utils import logging
from zbot.zephyr import (
    ReadTimeout,
    ReceiverExited,
    SendError,
    TransportError,
    Zephyr,
)

T = TypeVar("T")

tick_histogram = Histogram("tick_h", "Time spent dispatching one notice")
notices_read = Counter("notices_read", "Notices read from zwgc")
commands_fired = Counter("commands_fired", "Commands run", ["label"])
read_errors = Counter("read_errors", "Failed reads from zwgc", ["kind"])

MAX_BACKOFF = 15


def default_signature(name: str) -> Callable[[], str]:
    zsig = utils.get_secret("ZSIG") or name
    return lambda: zsig


class State:
    """
    Everything a command can touch: who and where the bot is, its data,
    and its zephyr session.

    class_ and instance are where LOCAL commands answer. Changing them with
    move_to doesn't change what zwgc is subscribed to; use zio.resubscribe.
    """

    def __init__(  # pylint: disable=too-many-arguments
        self,
        name: str,
        class_: str,
        instance: str,
        zio: Zephyr,
        signature: Optional[Callable[[], str]] = None,
    ) -> None:
        self.name = name
        self.class_ = class_
        self.instance = instance
        self.zio = zio
        self.signature = signature or default_signature(name)
        self.data: dict[str, Any] = {}

    def here(self) -> Triplet:
        return Triplet.of_instance(self.class_, self.instance)

    async def zwrite(self, notice: Notice) -> None:
        await self.zio.zwrite(notice)

    async def reply_to(
        self, notice: Notice, text: str, zsig: Optional[str] = None
    ) -> None:
        "answer on the class and instance notice came in on"
        reply = notice.make_reply(
            self.name,
            self.signature() if zsig is None else zsig,
            text,
            wrap=utils.WRAP_WIDTH,
        )
        await self.zwrite(reply)

    async def say(self, text: str, zsig: Optional[str] = None) -> None:
        "send to the bot's current class and instance"
        await self.zwrite(
            self.here().make_reply(
                self.name,
                self.signature() if zsig is None else zsig,
                text,
                wrap=utils.WRAP_WIDTH,
            )
        )

    def get_data(self, key: str, type_: Type[T]) -> Optional[T]:
        "None if there's nothing under key, or if it isn't exactly a type_"
        value = self.data.get(key)
        if type(value) is type_:
            return value
        return None

    def check_data(self, key: str, other: Any) -> bool:
        return self.get_data(key, type(other)) == other

    def insert_data(self, key: str, value: Any) -> Optional[Any]:
        "store value under key, returning whatever was there before"
        previous = self.data.get(key)
        self.data[key] = value
        return previous

    def remove_data(self, key: str) -> Optional[Any]:
        return self.data.pop(key, None)

    def move_to(self, to: Triplet) -> None:
        self.class_ = to.class_
        self.instance = to.instance if to.instance is not None else "personal"
        logging.info("%s moved to %s", self.name, self.here())


class Bot:
    """Reads notices and dispatches them to handlers and commands, in order.
    pre handlers, then commands, then post handlers; the first one to fire wins.
    """

    def __init__(  # pylint: disable=too-many-arguments
        self,
        state: State,
        commands: Iterable[Command] = (),
        pre_command_handlers: Iterable[Handler] = (),
        post_command_handlers: Iterable[Handler] = (),
        tick_delay: float = utils.TICK_DELAY,
    ) -> None:
        self.state = state
        self.commands = list(commands)
        self.pre_command_handlers = list(pre_command_handlers)
        self.post_command_handlers = list(post_command_handlers)
        self.tick_delay = tick_delay
        self.exiting = False
        self.sigints = 0
        self.start_time = time.time()
        self.restart_count = 0

    @staticmethod
    def build(name: str, start: tuple[str, str]) -> "Builder":
        return Builder(name, start)

    @property
    def zio(self) -> Zephyr:
        return self.state.zio

    async def start(self) -> None:
        """
        Add SIGINT/SIGTERM handlers and start zwgc.
        """
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, self.sync_signal_handler)
        logging.debug("added signal handlers, starting zwgc")
        await self.zio.start()

    def sync_signal_handler(self, *_: Any) -> None:
        """Stop after the current notice. Kill zwgc so a blocked read returns"""
        logging.info("handling signal. sigints: %s", self.sigints)
        self.sigints += 1
        self.exiting = True
        asyncio.create_task(self.zio.kill())
        if self.sigints >= 3:
            sys.exit(1)

    async def close(self) -> None:
        await self.zio.close()
        logging.info("exited".center(60, "="))

    @aio.time(tick_histogram)
    async def tick(self, notice: Notice) -> None:
        "run one notice through the handlers and commands"
        if notice.opcode == "AUTO":
            # AUTO notices are other bots' replies (and ours)
            return
        for handler in self.pre_command_handlers:
            if await handler.try_exec(self.state, notice):
                logging.debug("%s handled %s", handler, notice)
                return
        for command in self.commands:
            if await command.try_exec(self.state, notice):
                commands_fired.labels(command.labels[0] if command.labels else "").inc()
                return
        for handler in self.post_command_handlers:
            if await handler.try_exec(self.state, notice):
                logging.debug("%s handled %s", handler, notice)
                return

    async def recover(self) -> None:
        """restart zwgc after it died, backing off if it keeps dying"""
        self.restart_count += 1
        backoff = 0.5 * (2**self.restart_count - 1)
        if backoff > MAX_BACKOFF:
            raise TransportError(
                f"zwgc died {self.restart_count} times in a row, giving up"
            )
        logging.info("%s will restart zwgc in %s second(s)", self.state.name, backoff)
        await asyncio.sleep(backoff)
        await self.restart_zwgc()

    async def restart_zwgc(self) -> None:
        "a zwgc that dies again right away shows up as a failed read on the next loop"
        try:
            await self.zio.start()
        except (ReceiverExited, ReadTimeout) as e:
            logging.error(termcolor.colored(f"zwgc restart failed: {e}", "red"))

    async def run(self) -> None:
        """
        Read notices forever, pausing after each one. Read errors are logged
        and don't stop the loop; zwgc is restarted if it dies or stalls.
        """
        while not self.exiting:
            try:
                notice = await self.zio.read()
            except ReadTimeout as e:
                if self.exiting:
                    break
                read_errors.labels("timeout").inc()
                logging.warning("%s, restarting zwgc", e)
                await self.restart_zwgc()
            except ReceiverExited as e:
                if self.exiting:
                    break
                read_errors.labels("exited").inc()
                logging.error(termcolor.colored(str(e), "red"))
                await self.recover()
            except (MalformedNotice, OSError) as e:
                read_errors.labels("malformed").inc()
                logging.error(termcolor.colored(f"couldn't read notice: {e}", "red"))
            else:
                notices_read.inc()
                self.restart_count = 0
                try:
                    await self.tick(notice)
                except SendError as e:
                    logging.error(
                        termcolor.colored(f"couldn't answer {notice}: {e}", "red")
                    )
            await asyncio.sleep(self.tick_delay)
        logging.info("stopped reading notices")


class Builder:
    """
    Bot.build("topy", ("help", "ai")).sub_to_class("help").command(...).run()
    """

    def __init__(self, name: str, start: tuple[str, str]) -> None:
        self.name = name
        self.class_, self.instance = start
        self.subs: list[Triplet] = []
        self.commands: list[Command] = []
        self.pre_command_handlers: list[Handler] = []
        self.post_command_handlers: list[Handler] = []
        self.signature: Optional[Callable[[], str]] = None

    @classmethod
    def from_secrets(cls, name: str, start: tuple[str, str]) -> "Builder":
        "like Bot.build, but BOT_NAME, BOT_CLASS, BOT_INSTANCE and SUBSCRIPTIONS win if set"
        builder = cls(
            utils.get_secret("BOT_NAME") or name,
            (
                utils.get_secret("BOT_CLASS") or start[0],
                utils.get_secret("BOT_INSTANCE") or start[1],
            ),
        )
        for raw in utils.get_secret("SUBSCRIPTIONS").split(";"):
            if raw.strip():
                builder.sub_to(Triplet.parse(raw))
        return builder

    def sub_to_class(self, class_: str) -> "Builder":
        self.subs.append(Triplet.of_class(class_))
        return self

    def sub_to(self, triplet: Triplet) -> "Builder":
        self.subs.append(triplet)
        return self

    def signed(self, signature: Callable[[], str]) -> "Builder":
        self.signature = signature
        return self

    def command(
        self, shape: Shape, scope: Scope, labels: Iterable[str], action: Action
    ) -> "Builder":
        self.commands.append(Command(shape, scope, labels, action))
        return self

    def pre(self, action: HandlerAction) -> "Builder":
        self.pre_command_handlers.append(Handler(action))
        return self

    def post(self, action: HandlerAction) -> "Builder":
        self.post_command_handlers.append(Handler(action))
        return self

    def build(self, zio: Optional[Zephyr] = None) -> Bot:
        "zio defaults to a new zwgc session subscribed to self.subs"
        return Bot(
            State(
                self.name,
                self.class_,
                self.instance,
                zio or Zephyr(self.subs),
                self.signature,
            ),
            self.commands,
            self.pre_command_handlers,
            self.post_command_handlers,
        )

    def run(self) -> None:
        run_bot(self.build)


async def no_get(request: web.Request) -> web.Response:
    raise web.HTTPFound(location="https://web.mit.edu/zephyr/")


async def status(request: web.Request) -> web.Response:
    bot = request.app.get("bot")
    if not bot:
        return web.Response(status=504, text="Sorry, no live workers.")
    return web.json_response(
        {
            "name": bot.state.name,
            "class": bot.state.class_,
            "instance": bot.state.instance,
            "subs": [str(sub) for sub in bot.zio.subs],
            "zwgc_running": bot.zio.running,
            "uptime": round(time.time() - bot.start_time),
        }
    )


app = web.Application()
app.add_routes(
    [
        web.get("/", no_get),
        web.get("/status", status),
        web.get("/metrics", aio.web.server_stats),
    ]
)


async def serve_bot(make_bot: Callable[[], Bot], local_app: web.Application = app) -> None:
    """Run the bot until it's told to stop, with the status app next to it.
    zwgc is killed and its files removed however this exits."""
    bot = make_bot()
    local_app["bot"] = bot
    runner = web.AppRunner(local_app, access_log=None)
    try:
        await runner.setup()
        await web.TCPSite(runner, "0.0.0.0", utils.PORT).start()
        await bot.start()
        await bot.run()
    finally:
        await bot.close()
        await runner.cleanup()


def run_bot(make_bot: Callable[[], Bot], local_app: web.Application = app) -> None:
    asyncio.run(serve_bot(make_bot, local_app))
