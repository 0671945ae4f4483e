#!/usr/bin/python3.9
# Copyright (c) 2021 MobileCoin Inc.
# Copyright (c) 2021 The Forest Team
import asyncio
import functools
import logging
import os
from typing import Optional, cast

import phonenumbers as pn
from phonenumbers import NumberParseException


def FuckAiohttp(record: logging.LogRecord) -> bool:
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
console_handler.addFilter(FuckAiohttp)
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
        secrets = parse_secrets(open(f"{env}_secrets", encoding="utf-8").read())
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


class ConfigError(Exception):
    pass


def require_secret(key: str) -> str:
    "like get_secret, but refuse to start without it"
    secret = get_secret(key)
    if not secret:
        raise ConfigError(
            f"{key} is not set. Put it in the environment or in {os.environ.get('ENV', 'dev')}_secrets"
        )
    return secret


## Parameters for easy access and ergonomic use

AUTH_DIR = get_secret("AUTH_DIR") or "./auth_state"
BRIDGE = get_secret("WA_BRIDGE") or "wa-bridge"
VERSION_URL = (
    get_secret("VERSION_URL")
    or "https://raw.githubusercontent.com/WhiskeySockets/Baileys/master/src/Defaults/baileys-version.json"
)
RECONNECT_DELAY = float(get_secret("RECONNECT_DELAY") or 5)
PORT = int(get_secret("PORT") or 8080)
LOCAL = os.getenv("FLY_APP_NAME") is None


#### Configure logging to file

if get_secret("LOGFILES") or not LOCAL:
    handler = logging.FileHandler("debug.log")
    handler.setLevel("DEBUG")
    handler.setFormatter(fmt)
    handler.addFilter(FuckAiohttp)
    logger.addHandler(handler)


## JIDs

GROUP_SUFFIX = "@g.us"
STATUS_BROADCAST = "status@broadcast"


def jid_user(jid: Optional[str]) -> str:
    """
    The user part of a jid: "5551234:12@s.whatsapp.net" -> "5551234"
    """
    if not jid:
        return ""
    return jid.split("@", 1)[0].split(":", 1)[0]


def is_group_jid(jid: Optional[str]) -> bool:
    return bool(jid) and str(jid).endswith(GROUP_SUFFIX)


def e164_format(raw_number: str) -> Optional[str]:
    "jid users are bare international numbers, without the plus"
    try:
        return pn.format_number(
            pn.parse("+" + raw_number.removeprefix("+")), pn.PhoneNumberFormat.E164
        )
    except NumberParseException:
        return None


def log_task_result(task: asyncio.Task) -> None:
    """
    Done callback which logs task done result
    args:
        task (asyncio.task): Finished task
    """
    name = task.get_name() + "-" + getattr(task.get_coro(), "__name__", "")
    try:
        result = task.result()
        logging.info("final result of %s was %s", name, result)
    except asyncio.CancelledError:
        logging.info("task %s was cancelled", name)
    except Exception:  # pylint: disable=broad-except
        logging.exception("%s errored", name)
