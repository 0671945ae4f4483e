#!/usr/bin/python3.9
# Copyright (c) 2021 MobileCoin Inc.
# Copyright (c) 2021 The Forest Team
"""
FYI: this module uses a lot of `or`. `None or 1` is `1`, not `True`.
The bridge hands us baileys-shaped WAMessage dicts where any field can be
missing or `null`, so `(blob.get("x") or {})` is how we walk them.
"""
import json
from typing import Optional

from circlebot import utils

# in order of preference
TEXT_FIELDS = (
    ("conversation",),
    ("extendedTextMessage", "text"),
    ("imageMessage", "caption"),
    ("videoMessage", "caption"),
)


def extract_text(content: Optional[dict]) -> str:
    """First non-empty text out of a message content dict, or ''.
    Reactions, receipts, locations, contact cards and uncaptioned media have none."""
    for path in TEXT_FIELDS:
        node = content or {}
        for field in path:
            node = node.get(field) if isinstance(node, dict) else None
        if node and isinstance(node, str):
            return node
    return ""


class Dictable:
    def to_dict(self) -> dict:
        """
        Returns a dictionary of message instance
        variables except for the blob
        """
        properties = {}
        for attr in dir(self):
            if not (attr.startswith("_") or attr == "blob"):
                val = getattr(self, attr)
                if val and not callable(val):
                    if isinstance(val, Dictable):
                        properties[attr] = val.to_dict()
                    else:
                        properties[attr] = val
        return properties


class InboundMessage(Dictable):
    """
    Normalized view of one protocol message, only alive while the relay handles it

    Attributes
    -----------
    blob: dict
       the WAMessage as sent by the bridge
    group_id: str
       remote jid; a group jid ends in @g.us
    message_id: str
       protocol-assigned id, passed through to the webhook
    sender_phone: str
       participant number for groups, else the chat's own number
    sender_name: str
       push name, falling back to sender_phone
    text: str
       extracted text content, '' if there isn't any
    """

    group_id: str
    message_id: str
    sender_phone: str
    sender_name: str
    text: str
    from_me: bool

    def __init__(self, blob: dict) -> None:
        self.blob = blob
        key = blob.get("key") or {}
        self.group_id = key.get("remoteJid") or ""
        self.message_id = key.get("id") or ""
        self.from_me = bool(key.get("fromMe"))
        self.participant = key.get("participant") or ""
        self.sender_phone = utils.jid_user(self.participant) or utils.jid_user(
            self.group_id
        )
        self.sender_name = blob.get("pushName") or self.sender_phone
        self.text = extract_text(blob.get("message"))

    @property
    def is_status_broadcast(self) -> bool:
        return self.group_id == utils.STATUS_BROADCAST

    @property
    def is_group(self) -> bool:
        return utils.is_group_jid(self.group_id)

    def to_webhook(self, circle_id: str) -> dict[str, str]:
        return {
            "action": "message",
            "circle_id": circle_id,
            "whatsapp_message_id": self.message_id,
            "sender_phone": self.sender_phone,
            "sender_name": self.sender_name,
            "content": self.text,
        }

    def __getattr__(self, attr: str) -> None:
        # return falsy back if not found
        return None

    def __repr__(self) -> str:
        return f"InboundMessage: {json.dumps(self.to_dict())}"
