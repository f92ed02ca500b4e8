from __future__ import annotations

import logging
from typing import List

import redis

from .store import scan_hashes

LOGGER = logging.getLogger(__name__)

USER_KEY_PATTERN = "constellation:*"


class RecipientDirectory:
    """Enumerates every FID that has generated a constellation."""

    def __init__(self, client: redis.Redis, pattern: str = USER_KEY_PATTERN) -> None:
        self.client = client
        self.pattern = pattern

    def all_fids(self) -> List[int]:
        fids = set()
        for key, record in scan_hashes(self.client, self.pattern).items():
            raw = record.get("fid")
            if not raw:
                continue
            try:
                fids.add(int(raw))
            except ValueError:
                LOGGER.warning("Skipping %s: fid %r is not numeric", key, raw)
        return sorted(fids)


__all__ = ["RecipientDirectory", "USER_KEY_PATTERN"]
