#!/usr/bin/python3
# Copyright (c) 2021 MobileCoin Inc.
# Copyright (c) 2021 The Forest Team
"""
The zwgc/zwrite session: Zephyr.
Lifecycle: writes zwgc's format and subscription files, runs and restarts zwgc,
kills it and removes the files on close.
I/O: reads zwgc's stdout one notice block at a time, and runs zwrite once
per outgoing notice.
"""
import asyncio
import asyncio.subprocess as subprocess  # https://github.com/PyCQA/pylint/issues/1469
import tempfile
from asyncio.subprocess import PIPE
from pathlib import Path
from typing import Any, Iterable, Optional

import termcolor

from zbot import utils
from zbot.message import (
    SENTINEL,
    MalformedNotice,
    Notice,
    Triplet,
    ZephyrError,
    parse_notice,
    zwrite_args,
)
from zbot.utils import logging

# longest line we'll read from zwgc, in bytes
LINE_LIMIT = 2**20


class TransportError(ZephyrError):
    """zwgc couldn't be set up, started, or cleaned up. The bot can't run like this."""


class ReceiverExited(ZephyrError):
    pass


class ReadTimeout(ZephyrError):
    pass


class SendError(ZephyrError):
    pass


class Zephyr:
    """
    Represents a zwgc process plus access to zwrite.

    Must be start()ed (or used as `async with`) before reading,
    and close()d when done: closing kills zwgc and removes the temp files.
    """

    def __init__(
        self,
        subs: Iterable[Triplet],
        zwgc: str = utils.ZWGC,
        zwrite: str = utils.ZWRITE,
        read_timeout: Optional[float] = utils.READ_TIMEOUT,
        line_limit: int = LINE_LIMIT,
    ) -> None:
        self.subs = list(subs)
        self.zwgc = zwgc
        self.zwrite_path = zwrite
        self.read_timeout = read_timeout
        self.line_limit = line_limit
        self.proc: Optional[subprocess.Process] = None
        self.closed = False
        try:
            self.format_file = self._scratch_file("format", FORMAT)
        except OSError as e:
            raise TransportError(f"couldn't write zwgc config: {e}") from e
        try:
            self.sub_file = self._scratch_file("subs", self._render_subs())
        except OSError as e:
            self.format_file.unlink(missing_ok=True)
            raise TransportError(f"couldn't write zwgc subscriptions: {e}") from e

    @staticmethod
    def _scratch_file(kind: str, contents: str) -> Path:
        with tempfile.NamedTemporaryFile(
            "w", prefix=f"zbot-{kind}-", delete=False
        ) as scratch:
            scratch.write(contents)
        return Path(scratch.name)

    def _render_subs(self) -> str:
        return "".join(f"{sub}\n" for sub in self.subs)

    @property
    def running(self) -> bool:
        return self.proc is not None and self.proc.returncode is None

    async def start(self) -> None:
        """Start zwgc and throw away the first thing it prints"""
        await self.restart()
        await self.read_block()
        logging.info("connected to zephyr!")

    async def restart(self) -> None:
        "kill zwgc if it's running and launch a fresh one with the same files"
        if self.closed:
            raise TransportError("can't restart a closed zephyr session")
        await self.kill()
        command = [
            self.zwgc,
            "-nofork",
            "-ttymode",
            "-f",
            str(self.format_file),
            "-subfile",
            str(self.sub_file),
        ]
        logging.info(command)
        try:
            self.proc = await asyncio.create_subprocess_exec(
                *command, stdout=PIPE, limit=self.line_limit
            )
        except OSError as e:
            raise TransportError(f"couldn't start {self.zwgc}: {e}") from e
        logging.info("started %s with PID %s", self.zwgc, self.proc.pid)

    async def kill(self) -> None:
        "kill zwgc. does nothing if it isn't running"
        if not self.proc:
            return
        proc, self.proc = self.proc, None
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                logging.info("no %s process", self.zwgc)
        returncode = await proc.wait()
        logging.info("%s exited with returncode %s", self.zwgc, returncode)

    async def resubscribe(self, subs: Iterable[Triplet]) -> None:
        "replace the subscription list and restart zwgc so it takes effect"
        self.subs = list(subs)
        try:
            self.sub_file.write_text(self._render_subs())
        except OSError as e:
            raise TransportError(f"couldn't rewrite subscriptions: {e}") from e
        logging.info("resubscribing to %s", ", ".join(map(str, self.subs)))
        await self.start()

    async def _read_block(self) -> list[str]:
        if not self.proc or not self.proc.stdout:
            raise ReceiverExited(f"{self.zwgc} isn't running")
        stdout = self.proc.stdout
        lines = []
        too_long = False
        while True:
            try:
                raw = await stdout.readline()
            except ValueError:
                # over line_limit. the rest of the block is thrown away
                too_long = True
                continue
            if not raw:
                raise ReceiverExited(f"{self.zwgc} closed its output")
            line = raw.decode(errors="replace").rstrip("\n")
            if line == SENTINEL:
                if too_long:
                    raise MalformedNotice(
                        f"{self.zwgc} printed a line over {self.line_limit} bytes"
                    )
                return lines
            lines.append(line)

    async def read_block(self) -> list[str]:
        """Wait for zwgc to print one whole notice"""
        if not self.read_timeout:
            return await self._read_block()
        try:
            return await asyncio.wait_for(self._read_block(), self.read_timeout)
        except asyncio.TimeoutError as e:
            raise ReadTimeout(
                f"nothing from {self.zwgc} for {self.read_timeout}s"
            ) from e

    async def read(self) -> Notice:
        notice = parse_notice(await self.read_block())
        logging.debug("read %s", notice)
        return notice

    async def zwrite(self, notice: Notice) -> None:
        "send notice with zwrite and wait for it to finish"
        args = zwrite_args(notice, self.zwrite_path)
        logging.info("zwrite to %s: %r", notice.triplet(), notice.text)
        try:
            proc = await asyncio.create_subprocess_exec(*args)
            returncode = await proc.wait()
        except OSError as e:
            raise SendError(f"couldn't run {self.zwrite_path}: {e}") from e
        if returncode:
            logging.warning(
                termcolor.colored("%s exited with returncode %s", "red"),
                self.zwrite_path,
                returncode,
            )

    async def close(self) -> None:
        """Kill zwgc and remove its files. Safe to call more than once"""
        if self.closed:
            return
        self.closed = True
        try:
            await self.kill()
            for path in (self.format_file, self.sub_file):
                path.unlink(missing_ok=True)
        except OSError as e:
            raise TransportError(f"couldn't clean up zephyr session: {e}") from e
        logging.info("closed zephyr session")

    async def __aenter__(self) -> "Zephyr":
        try:
            await self.start()
        except BaseException:
            await self.close()
            raise
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.close()


# zwgc format file. prints every field as `key: value` lines, one `body:` per
# line of the message, then the sentinel. pings and mail are dropped.
FORMAT = r"""
if (downcase($opcode) == "ping") then

	exit
endif

case downcase($class)
match "mail"
	exit

default
	fields signature body
	if (downcase($recipient) == downcase($user)) then
		print "personal\n"
	endif
	while ($opcode != "") do
		print "opcode:" lbreak($opcode, "\n")
		print "\n"
		set dummy = lany($opcode, "\n")
	endwhile
	while ($class != "") do
		print "class:" lbreak($class, "\n")
		print "\n"
		set dummy = lany($class, "\n")
	endwhile
	while ($instance != "") do
		print "instance:" lbreak($instance, "\n")
		print "\n"
		set dummy = lany($instance, "\n")
	endwhile
	while ($sender != "") do
		print "sender:" lbreak($sender, "\n")
		print "\n"
		set dummy = lany($sender, "\n")
	endwhile
	while ($auth != "") do
		print "auth:" lbreak($auth, "\n")
		print "\n"
		set dummy = lany($auth, "\n")
	endwhile
	while ($time != "") do
		print "time:" lbreak($time, "\n")
		print "\n"
		set dummy = lany($time, "\n")
	endwhile
	while ($date != "") do
		print "date:" lbreak($date, "\n")
		print "\n"
		set dummy = lany($date, "\n")
	endwhile
	while ($fromhost != "") do
		print "fromhost:" lbreak($fromhost, "\n")
		print "\n"
		set dummy = lany($fromhost, "\n")
	endwhile
	while ($signature != "") do
		print "signature:" lbreak($signature, "\n")
		print "\n"
		set dummy = lany($signature, "\n")
	endwhile
	while ($body != "") do
		print "body:" lbreak($body, "\n")
		print " \n"
		set dummy = lany($body, "\n")
	endwhile
	print "done\n"
	put "stdout"
	exit

endcase
"""
