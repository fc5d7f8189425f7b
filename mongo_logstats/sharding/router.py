"""Route per-file accumulation to a shard-specific :class:`AccumulatorSet`."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Callable, Dict, Optional, Tuple, Union

from ..accumulators.accumulator_set import AccumulatorSet
from ..utils.logging_utils import get_logger

LOGGER = get_logger("sharding.router")

SHARD_PATTERN = re.compile(r"shard-(\d+)-(\d+)")


@dataclass(frozen=True)
class ShardInfo:
    shard: int
    node: int

    def __str__(self) -> str:
        return f"shard-{self.shard:02d}-{self.node:02d}"


ShardParser = Callable[[str], Optional[ShardInfo]]


def parse_shard_info(file_name: str) -> Optional[ShardInfo]:
    """Default parser: ``...-shard-01-02.host...log.gz`` -> shard 1, node 2."""

    match = SHARD_PATTERN.search(Path(file_name).name)
    if match is None:
        return None
    return ShardInfo(int(match.group(1)), int(match.group(2)))


class ShardRouter:
    """Persistent shard -> accumulator-set mapping shared across files.

    Files of the same shard node (``shard-01-02``) merge into one set; files
    whose names do not parse fall back to ``fallback``.
    """

    def __init__(
        self,
        fallback: AccumulatorSet,
        *,
        parser: Optional[ShardParser] = None,
    ) -> None:
        self.fallback = fallback
        self.parser = parser or parse_shard_info
        self._lock = Lock()
        self._sets: Dict[str, AccumulatorSet] = {}

    def resolve(self, path: Union[str, Path]) -> Optional[ShardInfo]:
        try:
            info = self.parser(str(path))
        except ValueError:
            info = None
        if info is None:
            LOGGER.warning(
                "Could not parse shard identity from %s; using global accumulators", path
            )
        return info

    def targets_for(self, path: Union[str, Path]) -> Tuple[AccumulatorSet, Optional[ShardInfo]]:
        info = self.resolve(path)
        if info is None:
            return self.fallback, None
        with self._lock:
            targets = self._sets.get(str(info))
            if targets is None:
                targets = AccumulatorSet()
                self._sets[str(info)] = targets
                LOGGER.info("Tracking new shard %s (from %s)", info, path)
        return targets, info

    def shard_sets(self) -> Dict[str, AccumulatorSet]:
        with self._lock:
            return dict(sorted(self._sets.items()))

    def __len__(self) -> int:
        return len(self._sets)
