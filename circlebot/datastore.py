#!/usr/bin/python3.9
# Copyright (c) 2021 MobileCoin Inc.
# Copyright (c) 2021 The Forest Team

import json
import logging
import os
from pathlib import Path
from typing import Any, Optional
from urllib.parse import quote, unquote

from circlebot import utils

JSON = dict[str, Any]


class CredentialError(Exception):
    pass


def path_part(name: str) -> str:
    "one path component, whatever the bridge sent. quote leaves dots alone, so . and .. by hand"
    quoted = quote(name, safe="")
    if quoted in (".", ".."):
        return quoted.replace(".", "%2E")
    return quoted


def key_path(key_type: str, key_id: str) -> str:
    "key types and ids come from the bridge and can contain / and :, which don't belong in paths"
    return f"keys/{path_part(key_type)}/{path_part(key_id)}.json"


class CredentialStore:
    """
    Session credentials as a directory of json files:
    creds.json for the account itself, and keys/<type>/<id>.json for each signal key.
    The contents are opaque to us; the bridge produces them and we hand them back on the next start.
    Every update hits the disk immediately so an unclean exit doesn't cost a re-pairing.
    """

    def __init__(self, path: Optional[str] = None) -> None:
        self.path = Path(path or utils.AUTH_DIR)
        self.path.mkdir(parents=True, exist_ok=True)
        self.creds: JSON = {}
        logging.info("CredentialStore path is %s", self.path)

    def _read(self, filename: str) -> Optional[Any]:
        try:
            return json.loads((self.path / filename).read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except json.JSONDecodeError as e:
            raise CredentialError(f"corrupt credential file {filename}: {e}") from e

    def _write(self, filename: str, data: Any) -> None:
        # write-then-rename so a crash mid-write leaves the old file intact
        target = self.path / filename
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(f".{target.name}.tmp")
        tmp.write_text(json.dumps(data), encoding="utf-8")
        os.replace(tmp, target)

    def load_creds(self) -> JSON:
        self.creds = self._read("creds.json") or {}
        if not self.creds:
            logging.info("no stored credentials, the bridge will ask for a pairing scan")
        return self.creds

    def load_keys(self) -> dict[str, JSON]:
        "every stored key, as {type: {id: value}}"
        keys: dict[str, JSON] = {}
        for key_file in sorted(self.path.glob("keys/*/*.json")):
            key_type = unquote(key_file.parent.name)
            keys.setdefault(key_type, {})[unquote(key_file.stem)] = self._read(
                str(key_file.relative_to(self.path))
            )
        return keys

    def load(self) -> tuple[JSON, dict[str, JSON]]:
        return self.load_creds(), self.load_keys()

    def update_creds(self, update: JSON) -> JSON:
        "merge a creds.update event into the stored creds and persist"
        self.creds = self.creds | update
        self._write("creds.json", self.creds)
        logging.debug("saved creds (%s)", ", ".join(update))
        return self.creds

    def set_keys(self, data: dict[str, Optional[JSON]]) -> None:
        "persist a keys.set event; a null value deletes that key"
        for key_type, entries in data.items():
            for key_id, value in (entries or {}).items():
                filename = key_path(key_type, key_id)
                if value is None:
                    (self.path / filename).unlink(missing_ok=True)
                else:
                    self._write(filename, value)

    @property
    def me(self) -> str:
        "our own jid, once paired"
        return (self.creds.get("me") or {}).get("id") or ""
