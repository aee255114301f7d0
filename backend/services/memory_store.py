"""
In-process game store. Used for local development and the test suite.

Records are deep-copied in both directions so callers never share state
with the store, as with a real serialization boundary.
"""
import copy
from typing import Any, Dict, Optional


class InMemoryGameStore:
    def __init__(self) -> None:
        self._records: Dict[str, Dict[str, Any]] = {}

    async def get(self, game_code: str) -> Optional[Dict[str, Any]]:
        record = self._records.get(game_code)
        return copy.deepcopy(record) if record is not None else None

    async def put(self, game_code: str, record: Dict[str, Any]) -> None:
        self._records[game_code] = copy.deepcopy(record)

    def __contains__(self, game_code: str) -> bool:
        return game_code in self._records

    def __len__(self) -> int:
        return len(self._records)
