# Copyright (c) 2021 MobileCoin Inc.
# Copyright (c) 2021 The Forest Team
"""
Zephyr notices and triplets, and the codec between them and the zwgc/zwrite
command line tools.

zwgc prints each notice as a block of `key: value` lines ending with `done`
(see FORMAT in zbot.zephyr). Keys may repeat: every `body` line is one line of
the message, other repeated keys are concatenated.
"""
import datetime
import enum
import textwrap
from dataclasses import dataclass, field
from typing import Iterable, Optional

from zbot.utils import logging

WRAP = 70
SENTINEL = "done"
# zwgc's $date and $time
DATE_FORMATS = ("%a %b %d %Y %H:%M:%S", "%a %b %d %H:%M:%S %Y", "%m/%d/%y %H:%M:%S")


class ZephyrError(Exception):
    pass


class MalformedNotice(ZephyrError, ValueError):
    """zwgc printed something we can't make a notice out of"""


class Direction(enum.Enum):
    INCOMING = "incoming"
    OUTGOING = "outgoing"


@dataclass(frozen=True)
class Triplet:
    """A Zephyr topic. None means wildcard for instance and recipient.
    An empty instance or recipient is written and parsed as a wildcard too,
    so Triplet("c", "") and Triplet("c") print the same."""

    class_: str
    instance: Optional[str] = None
    recipient: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.class_:
            raise ValueError("a triplet needs a class")

    @classmethod
    def of_class(cls, class_: str) -> "Triplet":
        return cls(class_)

    @classmethod
    def of_instance(cls, class_: str, instance: str) -> "Triplet":
        return cls(class_, instance)

    @classmethod
    def parse(cls, raw: str) -> "Triplet":
        "inverse of str(): 'class,instance,recipient' with * for wildcards"
        class_, instance, recipient, *_ = [
            part.strip() for part in raw.split(",")
        ] + [""] * 2
        return cls(
            class_,
            None if instance in ("", "*") else instance,
            None if recipient in ("", "*") else recipient,
        )

    def make_reply(
        self, sender: str, zsig: str, body: str, wrap: int = WRAP
    ) -> "Notice":
        """
        An AUTO notice addressed to this triplet.
        Wildcard instances are answered on instance personal.
        """
        return Notice.outgoing(
            "AUTO",
            self.class_,
            self.instance if self.instance is not None else "personal",
            sender,
            zsig,
            body,
            wrap=wrap,
            recipient=self.recipient or "",
        )

    def __str__(self) -> str:
        return f"{self.class_},{self.instance or '*'},{self.recipient or '*'}"


@dataclass(frozen=True)
class IncomingData:
    is_auth: bool
    received_at: datetime.datetime
    origin_host: str


@dataclass(frozen=True)
class Notice:
    """
    One zephyrgram, either read from zwgc or about to be handed to zwrite.

    Attributes
    -----------
    body: tuple[str, ...]
        message lines, in order
    incoming_data: Optional[IncomingData]
        auth/date/host for notices we received, None for the ones we send
    """

    opcode: str
    direction: Direction
    class_: str
    instance: str
    sender: str
    zsig: str
    body: tuple[str, ...]
    recipient: str = ""
    incoming_data: Optional[IncomingData] = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if (self.direction is Direction.INCOMING) != (self.incoming_data is not None):
            raise ValueError("incoming notices and only incoming notices carry incoming_data")

    @classmethod
    def outgoing(  # pylint: disable=too-many-arguments
        cls,
        opcode: str,
        class_: str,
        instance: str,
        sender: str,
        zsig: str,
        text: str,
        wrap: int = WRAP,
        recipient: str = "",
    ) -> "Notice":
        return cls(
            opcode=opcode,
            direction=Direction.OUTGOING,
            class_=class_,
            instance=instance,
            sender=sender,
            zsig=zsig,
            body=tuple(wrap_lines(text, wrap)),
            recipient=recipient,
        )

    @property
    def text(self) -> str:
        "the body as one string, the way commands see it"
        return "\n".join(self.body).strip()

    @property
    def is_auth(self) -> bool:
        return bool(self.incoming_data and self.incoming_data.is_auth)

    def triplet(self) -> Triplet:
        return Triplet.of_instance(self.class_, self.instance)

    def was_sent_to(self, triplet: Triplet) -> bool:
        return triplet.class_ == self.class_ and triplet.instance in (
            None,
            self.instance,
        )

    def make_reply(self, sender: str, zsig: str, text: str, wrap: int = WRAP) -> "Notice":
        return self.triplet().make_reply(sender, zsig, text, wrap=wrap)

    def __repr__(self) -> str:
        return f"<{self.direction.value} {self.opcode or '-'} {self.triplet()} from {self.sender}: {self.text!r}>"


def wrap_lines(text: str, limit: int = WRAP) -> list[str]:
    """
    Pack words into lines of at most `limit` characters. Newlines in text always
    start a new line, and words longer than limit get a line to themselves.
    A limit below 1 puts every word on its own line.
    """
    limit = max(limit, 1)
    lines: list[str] = []
    for paragraph in text.split("\n"):
        lines.extend(
            textwrap.wrap(
                paragraph,
                limit,
                break_long_words=False,
                break_on_hyphens=False,
            )
            or [""]
        )
    return lines


def parse_zephyr_time(date: str, time: str) -> datetime.datetime:
    stamp = f"{date} {time}".strip()
    for date_format in DATE_FORMATS:
        try:
            return datetime.datetime.strptime(stamp, date_format)
        except ValueError:
            continue
    if stamp:
        logging.debug("couldn't parse zephyr timestamp %r", stamp)
    return datetime.datetime.now()


def parse_notice(lines: Iterable[str]) -> Notice:
    "turn one zwgc block into a Notice"
    lines = list(lines)
    fields: dict[str, str] = {}
    body: list[str] = []
    for line in lines:
        key, sep, value = line.rstrip("\n").partition(": ")
        if not sep:
            # "personal", the sentinel, blank lines
            continue
        if key == "body":
            # the format file prints a space after every body line
            body.append(value.removesuffix(" "))
        elif key in (
            "opcode",
            "class",
            "instance",
            "sender",
            "auth",
            "time",
            "date",
            "fromhost",
            "signature",
        ):
            fields[key] = fields.get(key, "") + value
    if not fields.get("class"):
        raise MalformedNotice(f"no class in zwgc output: {list(lines)!r}")
    return Notice(
        opcode=fields.get("opcode", ""),
        direction=Direction.INCOMING,
        class_=fields["class"],
        instance=fields.get("instance", ""),
        sender=fields.get("sender", ""),
        zsig=fields.get("signature", ""),
        body=tuple(body),
        incoming_data=IncomingData(
            is_auth=fields.get("auth") == "yes",
            received_at=parse_zephyr_time(fields.get("date", ""), fields.get("time", "")),
            origin_host=fields.get("fromhost", ""),
        ),
    )


def zwrite_args(notice: Notice, zwrite: str = "zwrite") -> list[str]:
    "argv for sending notice with zwrite"
    message = "".join(f"{line}\n" for line in notice.body)
    args = [
        zwrite,
        "-d",
        "-c",
        notice.class_,
        "-i",
        notice.instance,
        "-S",
        notice.sender,
        "-s",
        notice.zsig,
        "-O",
        notice.opcode,
        "-m",
        message,
    ]
    if notice.recipient:
        # zwrite takes -m as the rest of the line, so recipients go before it
        args[-2:-2] = [notice.recipient]
    return args
