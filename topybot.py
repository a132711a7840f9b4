#!/usr/bin/python3
# Copyright (c) 2021 MobileCoin Inc.
# Copyright (c) 2021 The Forest Team

from zbot.command import CommandMatch, Scope, Shape
from zbot.core import Builder, State
from zbot.message import Notice, Triplet


async def sit(state: State, notice: Notice, _: CommandMatch) -> None:
    state.insert_data("sitting", True)
    await state.reply_to(notice, "*sits*")


async def stand(state: State, notice: Notice, _: CommandMatch) -> None:
    if state.check_data("sitting", True):
        state.remove_data("sitting")
        await state.reply_to(notice, "*stands up*")
    else:
        await state.reply_to(notice, "*is already standing*")


async def fetch(state: State, notice: Notice, match: CommandMatch) -> None:
    thing = match.args[0] if match.args else "the ball"
    fetched = state.get_data("fetched", list) or []
    state.insert_data("fetched", fetched + [thing])
    await state.reply_to(notice, f"*brings back {thing}*")


async def give(state: State, notice: Notice, match: CommandMatch) -> None:
    if len(match.args) < 2:
        await state.reply_to(notice, "*tilts head*")
        return
    thing, person = match.args
    await state.reply_to(notice, f"*gives {thing} to {person}*")


async def pet(state: State, notice: Notice, match: CommandMatch) -> None:
    how = f" {match.args[0]}" if match.args else ""
    await state.reply_to(notice, f"*wags tail{how}*")


async def come(state: State, notice: Notice, match: CommandMatch) -> None:
    "follow whoever called to their class and instance, resubscribing if needed"
    target = Triplet.of_instance(notice.class_, notice.instance)
    state.move_to(target)
    if not any(notice.was_sent_to(sub) for sub in state.zio.subs):
        await state.zio.resubscribe(state.zio.subs + [target])
    await state.reply_to(notice, "*trots over*")


def whisper(state: State, notice: Notice, match: CommandMatch) -> None:
    # SECRET: remember who asked, don't answer where anyone can see
    state.insert_data("secret_sender", notice.sender)


def ignore_unauthenticated(state: State, notice: Notice) -> bool:
    return not notice.is_auth and state.get_data("strict", bool) is True


async def confused(state: State, notice: Notice) -> bool:
    if state.name in notice.text and notice.triplet() == state.here():
        await state.reply_to(notice, "*tilts head*")
        return True
    return False


if __name__ == "__main__":
    (
        Builder.from_secrets("topy", ("help", "ai"))
        .sub_to_class("help")
        .sub_to(Triplet.of_instance("topy", "personal"))
        .pre(ignore_unauthenticated)
        .command(Shape.order(), Scope.LOCAL, ["sit"], sit)
        .command(Shape.order(), Scope.LOCAL, ["stand", "up"], stand)
        .command(Shape.unary_invoke(), Scope.LOCAL, ["fetch"], fetch)
        .command(Shape.binary_invoke(), Scope.LOCAL, ["give"], give)
        .command(Shape.invoke(), Scope.EVERYWHERE, ["pet", "scratch"], pet)
        .command(Shape.do_with(), Scope.EVERYWHERE, ["pet", "scratch"], pet)
        .command(Shape.order(), Scope.EVERYWHERE, ["come", "heel"], come)
        .command(Shape.unary_order(), Scope.SECRET, ["whisper"], whisper)
        .post(confused)
        .run()
    )
