import asyncio
import datetime
import logging
import os
from typing import Iterable

os.environ["ENV"] = "test"

from zbot.core import Bot, Builder
from zbot.message import Direction, IncomingData, Notice, Triplet
from zbot.zephyr import ReceiverExited, Zephyr

BOT_NAME = "topy"
START = ("help", "ai")


def incoming(
    body: str,
    class_: str = "help",
    instance: str = "ai",
    opcode: str = "",
    sender: str = "alice",
    auth: bool = True,
) -> Notice:
    """Makes a Notice as if zwgc had just printed it"""
    return Notice(
        opcode=opcode,
        direction=Direction.INCOMING,
        class_=class_,
        instance=instance,
        sender=sender,
        zsig="Alice",
        body=tuple(body.split("\n")),
        incoming_data=IncomingData(
            is_auth=auth,
            received_at=datetime.datetime(2021, 11, 19, 2, 56, 29),
            origin_host="athena.dialup.mit.edu",
        ),
    )


def block(body: str, class_: str = "help", instance: str = "ai", opcode: str = "") -> list[str]:
    """The lines zwgc would print for a notice, minus the sentinel"""
    lines = [f"class: {class_}", f"instance: {instance}", "sender: alice", "auth: yes"]
    if opcode:
        lines.insert(0, f"opcode: {opcode}")
    return lines + [f"body: {line} " for line in body.split("\n")]


class MockZephyr(Zephyr):
    """A Zephyr session that never runs zwgc or zwrite: blocks are read
    from inbox, and notices that would have been zwritten pile up in sent"""

    def __init__(self, subs: Iterable[Triplet] = ()) -> None:
        super().__init__(subs, zwgc="mock-zwgc", zwrite="mock-zwrite", read_timeout=None)
        self.inbox: asyncio.Queue[list[str]] = asyncio.Queue()
        self.sent: list[Notice] = []
        self.restarts = 0
        self.alive = False

    @property
    def running(self) -> bool:
        return self.alive

    async def restart(self) -> None:
        self.restarts += 1
        self.alive = True

    async def kill(self) -> None:
        self.alive = False

    async def read_block(self) -> list[str]:
        if not self.alive:
            raise ReceiverExited("mock zwgc isn't running")
        try:
            return await asyncio.wait_for(self.inbox.get(), timeout=1)
        except asyncio.TimeoutError:
            logging.error("timed out waiting for input")
            raise ReceiverExited("mock zwgc ran dry")

    async def zwrite(self, notice: Notice) -> None:
        self.sent.append(notice)

    async def send_input(self, body: str, **kwargs: str) -> None:
        """Puts a zwgc block in the inbox"""
        await self.inbox.put(block(body, **kwargs))


def mock_bot(builder: Builder) -> Bot:
    """Builds a bot that bypasses zwgc, zwrite and the tick delay"""
    bot = builder.build(MockZephyr(builder.subs))
    bot.tick_delay = 0
    return bot


def texts(notices: Iterable[Notice]) -> list[str]:
    return [notice.text for notice in notices]
