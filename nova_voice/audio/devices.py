"""Ownership bookkeeping for the microphone and the speaker."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

from nova_voice.core.errors import DeviceBusyError

LOGGER = logging.getLogger(__name__)

MICROPHONE = "microphone"
SPEAKER = "speaker"


@dataclass(slots=True, frozen=True)
class Claim:
    owner: str
    exclusive: bool


class DeviceArbiter:
    """Grant exclusive or shared claims on named audio resources.

    An exclusive claim requires the resource to be free of other owners; a
    shared claim only conflicts with an exclusive one. This lets the barge-in
    sampler read the microphone level while playback owns the speaker, while
    never letting it coexist with a listening session.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._claims: dict[str, dict[str, Claim]] = {}

    def claim(self, resource: str, owner: str, *, exclusive: bool = True) -> None:
        with self._lock:
            holders = self._claims.setdefault(resource, {})
            others = [claim for name, claim in holders.items() if name != owner]
            if exclusive and others:
                raise DeviceBusyError(resource, owner, [claim.owner for claim in others])
            if not exclusive and any(claim.exclusive for claim in others):
                raise DeviceBusyError(resource, owner, [claim.owner for claim in others])
            holders[owner] = Claim(owner=owner, exclusive=exclusive)
        LOGGER.debug("%s claimed %s (exclusive=%s)", owner, resource, exclusive)

    def release(self, resource: str, owner: str) -> bool:
        """Drop a claim; returns False when the owner held nothing."""
        with self._lock:
            holders = self._claims.get(resource)
            if not holders or owner not in holders:
                return False
            del holders[owner]
        LOGGER.debug("%s released %s", owner, resource)
        return True

    def owners(self, resource: str) -> list[str]:
        with self._lock:
            return sorted(self._claims.get(resource, {}))

    def is_exclusive(self, resource: str) -> bool:
        with self._lock:
            return any(claim.exclusive for claim in self._claims.get(resource, {}).values())
