"""
Firestore-backed GameStore: collection ``firestore_collection``, one document
per game code.

Document fields:
  gameCode, hostId, gameStarted, gameEnded, createdAt, expiresAt  (queryable)
  record                                                           (JSON text)

The full record goes in as JSON text because Firestore cannot hold its
nested ``games`` / ``players`` pair arrays. Reads and writes go through the
sync client on the loop's default executor.
"""
import asyncio
import functools
import json
import os
from typing import Any, Callable, Dict, Optional


class FirestoreGameStore:
    def __init__(self, settings):
        emulator = settings.firestore_emulator_host
        if emulator:
            os.environ["FIRESTORE_EMULATOR_HOST"] = emulator
        # Imported here so the memory backend runs without GCP packages
        from google.cloud import firestore
        self.db = firestore.Client(project=settings.google_cloud_project or None)
        self.collection = settings.firestore_collection

    async def _offload(self, fn: Callable, *args) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args))

    def _doc(self, game_code: str):
        return self.db.collection(self.collection).document(game_code)

    async def get(self, game_code: str) -> Optional[Dict[str, Any]]:
        snapshot = await self._offload(self._doc(game_code).get)
        if not snapshot.exists:
            return None
        raw = (snapshot.to_dict() or {}).get("record")
        return json.loads(raw) if raw else None

    async def put(self, game_code: str, record: Dict[str, Any]) -> None:
        fields = {
            key: record.get(key)
            for key in ("hostId", "createdAt", "expiresAt")
        }
        document = {
            "gameCode": game_code,
            **fields,
            "gameStarted": bool(record.get("gameStarted")),
            "gameEnded": bool(record.get("gameEnded")),
            "record": json.dumps(record),
        }
        await self._offload(self._doc(game_code).set, document)
