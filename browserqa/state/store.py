"""
Persistence boundary for team state.

Stores load and save the whole :class:`QAState` of a team. Saving strips
provider API keys. The in-memory store is used by tests and one-shot CLI
runs; the JSON file store keeps one file per team under ``state_dir``.
"""

import asyncio
import json
import re
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Dict, Optional

from pydantic import ValidationError as PydanticValidationError

from ..core.config import Config
from ..core.exceptions import StateStoreError
from ..core.logging_config import get_logger
from .models import QAState

_SAFE_TEAM_ID = re.compile(r"[^A-Za-z0-9_.-]")


class StateStore(ABC):
    """Loads and saves one team's state."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self.logger = get_logger(__name__)

    @abstractmethod
    async def load_state(self, team_id: str) -> QAState:
        """Return the team's state, or a fresh default state."""

    @abstractmethod
    async def save_state(self, team_id: str, actor_id: Optional[str], state: QAState) -> QAState:
        """Persist ``state`` and return what was stored."""

    def lock_for(self, team_id: str) -> asyncio.Lock:
        lock = self._locks.get(team_id)
        if lock is None:
            lock = self._locks[team_id] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def transaction(
        self, team_id: str, actor_id: Optional[str] = None
    ) -> AsyncIterator[QAState]:
        """
        Load, mutate, and save a team's state under a per-team lock.

        The state is only saved when the block exits without an exception.
        """
        async with self.lock_for(team_id):
            state = await self.load_state(team_id)
            yield state
            await self.save_state(team_id, actor_id, state)


class InMemoryStateStore(StateStore):
    """Keeps states in a dict. Copies on the way in and out."""

    def __init__(self, initial: Optional[Dict[str, QAState]] = None):
        super().__init__()
        self._states: Dict[str, QAState] = {}
        for team_id, state in (initial or {}).items():
            self._states[team_id] = state.sanitized_for_storage().model_copy(deep=True)

    async def load_state(self, team_id: str) -> QAState:
        state = self._states.get(team_id)
        if state is None:
            return QAState()
        return state.model_copy(deep=True)

    async def save_state(self, team_id: str, actor_id: Optional[str], state: QAState) -> QAState:
        stored = state.sanitized_for_storage().model_copy(deep=True)
        self._states[team_id] = stored
        self.logger.debug(
            "Saved team state",
            extra={"metadata": {"team_id": team_id, "actor_id": actor_id}},
        )
        return stored.model_copy(deep=True)


class JsonFileStateStore(StateStore):
    """One ``<team_id>.json`` file per team under a state directory."""

    def __init__(self, state_dir: Path):
        super().__init__()
        self.state_dir = Path(state_dir)

    @classmethod
    def from_config(cls, config: Config) -> "JsonFileStateStore":
        return cls(config.state_dir)

    def path_for(self, team_id: str) -> Path:
        if not team_id:
            raise StateStoreError("Team id is required.", team_id=team_id, operation="path")
        return self.state_dir / f"{_SAFE_TEAM_ID.sub('_', team_id)}.json"

    async def load_state(self, team_id: str) -> QAState:
        path = self.path_for(team_id)
        if not path.exists():
            return QAState()

        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return QAState.model_validate(data)
        except (OSError, json.JSONDecodeError, PydanticValidationError) as e:
            raise StateStoreError(
                f"Failed to load state for team '{team_id}': {e}",
                team_id=team_id,
                operation="load",
            ) from e

    async def save_state(self, team_id: str, actor_id: Optional[str], state: QAState) -> QAState:
        path = self.path_for(team_id)
        stored = state.sanitized_for_storage()
        tmp_path = path.with_suffix(".json.tmp")

        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(stored.model_dump(mode="json"), f, indent=2, ensure_ascii=False)
            tmp_path.replace(path)
        except OSError as e:
            raise StateStoreError(
                f"Failed to save state for team '{team_id}': {e}",
                team_id=team_id,
                operation="save",
            ) from e

        self.logger.debug(
            "Saved team state",
            extra={"metadata": {"team_id": team_id, "actor_id": actor_id, "path": str(path)}},
        )
        return stored
