#!/usr/bin/python3
# Copyright (c) 2021 MobileCoin Inc.
# Copyright (c) 2021 The Forest Team
import functools
import logging
import os
from typing import Optional, cast


def quiet_aiohttp(record: logging.LogRecord) -> bool:
    str_msg = str(getattr(record, "msg", ""))
    if "was destroyed but it is pending" in str_msg:
        return False
    if str_msg.startswith("task:") and str_msg.endswith(">"):
        return False
    return True


logger = logging.getLogger()
logger.setLevel("DEBUG")
fmt = logging.Formatter("{levelname} {module}:{lineno}: {message}", style="{")
console_handler = logging.StreamHandler()
console_handler.setLevel(
    ((os.getenv("LOGLEVEL") or os.getenv("LOG_LEVEL")) or "DEBUG").upper()
)
console_handler.setFormatter(fmt)
console_handler.addFilter(quiet_aiohttp)
logger.addHandler(console_handler)


#### Configure Parameters

# edge cases:
# accessing an unset secret loads other variables and potentially overwrites existing ones
def parse_secrets(secrets: str) -> dict[str, str]:
    pairs = [
        line.strip().split("=", 1)
        for line in secrets.split("\n")
        if line and not line.startswith("#")
    ]
    can_be_a_dict = cast(list[tuple[str, str]], pairs)
    return dict(can_be_a_dict)


@functools.cache  # don't load the same env more than once
def load_secrets(env: Optional[str] = None, overwrite: bool = False) -> None:
    if not env:
        env = os.environ.get("ENV", "dev")
    try:
        logging.info("loading secrets from %s_secrets", env)
        secrets = parse_secrets(open(f"{env}_secrets").read())
        if overwrite:
            new_env = secrets
        else:
            # mask loaded secrets with existing env
            new_env = secrets | os.environ
        os.environ.update(new_env)
    except FileNotFoundError:
        pass


def get_secret(key: str, env: Optional[str] = None) -> str:
    try:
        secret = os.environ[key]
    except KeyError:
        load_secrets(env)
        secret = os.environ.get(key) or ""
    if secret.lower() in ("0", "false", "no"):
        return ""
    return secret


def get_float(key: str, default: float) -> float:
    "read a numeric parameter, falling back to default if unset or garbled"
    raw = get_secret(key)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logging.warning("ignoring non-numeric %s=%r, using %s", key, raw, default)
        return default


## Parameters for easy access and ergonomic use

ZWGC = get_secret("ZWGC") or "zwgc"
ZWRITE = get_secret("ZWRITE") or "zwrite"
# seconds to pause after each notice, so a flood of notices can't turn into a flood of replies
TICK_DELAY = get_float("TICK_DELAY", 0.1)
# 0 or unset means reads block until zwgc prints something
READ_TIMEOUT = get_float("READ_TIMEOUT", 0.0) or None
WRAP_WIDTH = int(get_float("WRAP_WIDTH", 70))
if WRAP_WIDTH < 1:
    logging.warning("ignoring WRAP_WIDTH=%s, using 70", WRAP_WIDTH)
    WRAP_WIDTH = 70
PORT = int(get_float("PORT", 8080))


#### Configure logging to file

if get_secret("LOGFILES"):
    handler = logging.FileHandler("debug.log")
    handler.setLevel("DEBUG")
    handler.setFormatter(fmt)
    handler.addFilter(quiet_aiohttp)
    logger.addHandler(handler)
