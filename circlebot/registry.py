#!/usr/bin/python3.9
# Copyright (c) 2021 MobileCoin Inc.
# Copyright (c) 2021 The Forest Team
import logging
from dataclasses import dataclass
from typing import Optional


class NotFound(Exception):
    pass


CIRCLE_NOT_FOUND = "Círculo no encontrado"


@dataclass(frozen=True)
class CircleBinding:
    circle_id: str
    group_id: str

    def to_dict(self) -> dict[str, str]:
        # existing backends read group_jid
        return {
            "circle_id": self.circle_id,
            "group_id": self.group_id,
            "group_jid": self.group_id,
        }


class CircleRegistry:
    """
    Which groups we relay, and under which circle.
    Lives as long as one Bridge; never persisted, the backend replays joins after a restart.
    Written only by CommandSurface, read by MessageRelay on every inbound message.
    None of these methods await, so on a single event loop reads and writes can't interleave.
    """

    def __init__(self) -> None:
        self.circles: dict[str, str] = {}

    def bind(self, circle_id: str, group_id: str) -> None:
        "insert or overwrite. doesn't check whether group_id is already bound elsewhere, join does"
        if circle_id in self.circles:
            logging.info(
                "rebinding %s from %s to %s", circle_id, self.circles[circle_id], group_id
            )
        self.circles[circle_id] = group_id

    def unbind(self, circle_id: str) -> str:
        try:
            return self.circles.pop(circle_id)
        except KeyError as e:
            raise NotFound(CIRCLE_NOT_FOUND) from e

    def get(self, circle_id: str) -> Optional[str]:
        return self.circles.get(circle_id)

    def lookup_by_group(self, group_id: str) -> Optional[str]:
        # few enough groups that a scan is fine; first match in insertion order
        for circle_id, bound_group in self.circles.items():
            if bound_group == group_id:
                return circle_id
        return None

    def list(self) -> list[CircleBinding]:
        return [CircleBinding(c, g) for c, g in self.circles.items()]

    def __len__(self) -> int:
        return len(self.circles)

    def __contains__(self, circle_id: object) -> bool:
        return circle_id in self.circles
