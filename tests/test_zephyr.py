import asyncio
import json
import pathlib
import sys

import pytest

from tests.mockbot import BOT_NAME, START, block
from zbot.core import Bot
from zbot.message import MalformedNotice, Notice, Triplet
from zbot.zephyr import (
    FORMAT,
    ReadTimeout,
    ReceiverExited,
    SendError,
    TransportError,
    Zephyr,
)

SUBS = [Triplet.of_class("help"), Triplet("message", "personal", "topy")]


def fake_zwgc(tmp_path: pathlib.Path, blocks: list[list[str]], linger: bool = True) -> str:
    """An executable that prints like zwgc: a connection block, then blocks"""
    output = "".join(
        "".join(f"{line}\n" for line in lines) + "done\n"
        for lines in [["connected"]] + blocks
    )
    script = tmp_path / "zwgc"
    script.write_text(
        f"#!{sys.executable}\n"
        "import sys, time\n"
        f"sys.stdout.write({output!r})\n"
        "sys.stdout.flush()\n"
        + ("time.sleep(60)\n" if linger else "")
    )
    script.chmod(0o755)
    return str(script)


def fake_zwrite(tmp_path: pathlib.Path) -> tuple[str, pathlib.Path]:
    """An executable that records its argv as json"""
    record = tmp_path / "zwrite.json"
    script = tmp_path / "zwrite"
    script.write_text(
        f"#!{sys.executable}\n"
        "import json, sys\n"
        f"open({str(record)!r}, 'w').write(json.dumps(sys.argv[1:]))\n"
    )
    script.chmod(0o755)
    return str(script), record


@pytest.mark.asyncio
async def test_scratch_files() -> None:
    zio = Zephyr(SUBS, zwgc="zwgc-that-isnt-there")
    assert zio.format_file.read_text() == FORMAT
    assert zio.sub_file.read_text() == "help,*,*\nmessage,personal,topy\n"
    await zio.close()
    assert not zio.format_file.exists()
    assert not zio.sub_file.exists()
    # idempotent
    await zio.close()


@pytest.mark.asyncio
async def test_missing_zwgc() -> None:
    zio = Zephyr(SUBS, zwgc="/nonexistent/zwgc")
    with pytest.raises(TransportError):
        await zio.start()
    await zio.close()
    with pytest.raises(TransportError):
        await zio.restart()


@pytest.mark.asyncio
async def test_read(tmp_path: pathlib.Path) -> None:
    """the connection block is thrown away and the next one is a notice"""
    zwgc = fake_zwgc(tmp_path, [block("topy, sit.\nplease"), block("hi", instance="other")])
    async with Zephyr(SUBS, zwgc=zwgc) as zio:
        assert zio.running
        notice = await zio.read()
        assert notice.class_ == "help"
        assert notice.instance == "ai"
        assert notice.text == "topy, sit.\nplease"
        assert notice.is_auth
        assert (await zio.read()).instance == "other"
    assert not zio.running
    assert not zio.format_file.exists()


@pytest.mark.asyncio
async def test_kill_and_restart(tmp_path: pathlib.Path) -> None:
    zwgc = fake_zwgc(tmp_path, [block("one"), block("two")])
    zio = Zephyr(SUBS, zwgc=zwgc)
    try:
        await zio.kill()  # not running yet, does nothing
        await zio.start()
        first = zio.proc
        assert (await zio.read()).text == "one"
        await zio.start()
        assert zio.proc is not first
        assert first is not None and first.returncode is not None
        # a fresh zwgc starts from the top
        assert (await zio.read()).text == "one"
        await zio.kill()
        await zio.kill()
        assert not zio.running
        with pytest.raises(ReceiverExited):
            await zio.read()
    finally:
        await zio.close()


@pytest.mark.asyncio
async def test_receiver_exits(tmp_path: pathlib.Path) -> None:
    zwgc = fake_zwgc(tmp_path, [block("last words")], linger=False)
    async with Zephyr(SUBS, zwgc=zwgc) as zio:
        assert (await zio.read()).text == "last words"
        with pytest.raises(ReceiverExited):
            await zio.read()


@pytest.mark.asyncio
async def test_read_timeout(tmp_path: pathlib.Path) -> None:
    zwgc = fake_zwgc(tmp_path, [])
    async with Zephyr(SUBS, zwgc=zwgc, read_timeout=0.2) as zio:
        with pytest.raises(ReadTimeout):
            await zio.read()


@pytest.mark.asyncio
async def test_resubscribe(tmp_path: pathlib.Path) -> None:
    zwgc = fake_zwgc(tmp_path, [block("hi")])
    async with Zephyr(SUBS, zwgc=zwgc) as zio:
        first = zio.proc
        await zio.resubscribe(SUBS + [Triplet.of_instance("lunch", "noodles")])
        assert zio.proc is not first
        assert zio.sub_file.read_text().splitlines()[-1] == "lunch,noodles,*"
        assert (await zio.read()).text == "hi"


@pytest.mark.asyncio
async def test_zwrite(tmp_path: pathlib.Path) -> None:
    zwrite, record = fake_zwrite(tmp_path)
    zio = Zephyr(SUBS, zwrite=zwrite)
    try:
        notice = Notice.outgoing("AUTO", "help", "ai", "topy", "woof", "*sits*\n*stays*")
        await zio.zwrite(notice)
        assert json.loads(record.read_text()) == [
            "-d",
            "-c",
            "help",
            "-i",
            "ai",
            "-S",
            "topy",
            "-s",
            "woof",
            "-O",
            "AUTO",
            "-m",
            "*sits*\n*stays*\n",
        ]
    finally:
        await zio.close()


@pytest.mark.asyncio
async def test_zwrite_failures(tmp_path: pathlib.Path) -> None:
    zio = Zephyr(SUBS, zwrite="/nonexistent/zwrite")
    try:
        with pytest.raises(SendError):
            await zio.zwrite(Notice.outgoing("AUTO", "help", "ai", "topy", "", "hi"))
        # exit codes aren't errors
        zio.zwrite_path = "false"
        await zio.zwrite(Notice.outgoing("AUTO", "help", "ai", "topy", "", "hi"))
    finally:
        await zio.close()


def test_failed_scratch_file_cleans_up(monkeypatch: pytest.MonkeyPatch) -> None:
    written: list[pathlib.Path] = []
    real_scratch_file = Zephyr._scratch_file

    def flaky_scratch_file(kind: str, contents: str) -> pathlib.Path:
        if kind == "subs":
            raise OSError("disk full")
        path = real_scratch_file(kind, contents)
        written.append(path)
        return path

    monkeypatch.setattr(Zephyr, "_scratch_file", staticmethod(flaky_scratch_file))
    with pytest.raises(TransportError):
        Zephyr(SUBS)
    assert len(written) == 1
    assert not written[0].exists()


@pytest.mark.asyncio
async def test_overlong_line_skips_the_block(tmp_path: pathlib.Path) -> None:
    zwgc = fake_zwgc(tmp_path, [block("x" * 5000), block("hi")])
    async with Zephyr(SUBS, zwgc=zwgc, line_limit=1024) as zio:
        with pytest.raises(MalformedNotice):
            await zio.read()
        # the tail of the long block isn't mistaken for a notice
        assert (await zio.read()).text == "hi"


@pytest.mark.asyncio
async def test_run_survives_overlong_lines(tmp_path: pathlib.Path) -> None:
    heard: list[str] = []

    def listen(state: object, notice: Notice) -> bool:
        heard.append(notice.text)
        if notice.text == "stop":
            bot.exiting = True
        return True

    zwgc = fake_zwgc(tmp_path, [block("x" * 70_000), block("hi"), block("stop")])
    zio = Zephyr(SUBS, zwgc=zwgc, line_limit=2**16)
    bot = Bot.build(BOT_NAME, START).post(listen).build(zio)
    bot.tick_delay = 0
    try:
        await zio.start()
        await asyncio.wait_for(bot.run(), timeout=10)
    finally:
        await zio.close()
    assert heard == ["hi", "stop"]
