"""
Persistence for engine state (transition history and approval requests).

The engine hands the store a plain dict after every mutation and reads it
back on restore(). Storage technology is pluggable:

- InMemoryTransitionStore: default, nothing survives the process
- JsonFileTransitionStore: single JSON file, written atomically
"""

import copy
import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional, Union

from .config import STATE_DIR
from .phase_model import utcnow

logger = logging.getLogger("transition_store")

STATE_FILE_NAME = "transition_state.json"


def empty_state() -> Dict[str, Any]:
    return {"history": [], "approvals": [], "created_at": utcnow().isoformat()}


class TransitionStore(ABC):

    @abstractmethod
    async def load(self) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def save(self, state: Dict[str, Any]) -> None:
        ...


class InMemoryTransitionStore(TransitionStore):

    def __init__(self):
        self._state: Optional[Dict[str, Any]] = None

    async def load(self) -> Dict[str, Any]:
        if self._state is None:
            return empty_state()
        return copy.deepcopy(self._state)

    async def save(self, state: Dict[str, Any]) -> None:
        self._state = copy.deepcopy(state)


class JsonFileTransitionStore(TransitionStore):
    """State kept in one JSON file, replaced atomically on each save."""

    def __init__(self, state_dir: Union[str, Path] = STATE_DIR):
        self._state_dir = Path(state_dir)
        self._state_file = self._state_dir / STATE_FILE_NAME

    @property
    def state_file(self) -> Path:
        return self._state_file

    async def load(self) -> Dict[str, Any]:
        """Load state from file."""
        if not self._state_file.exists():
            return empty_state()
        try:
            return json.loads(self._state_file.read_text())
        except (json.JSONDecodeError, IOError) as e:
            logger.error(f"Failed to load state file: {e}")
            return empty_state()

    async def save(self, state: Dict[str, Any]) -> None:
        """Save state to file atomically."""
        self._state_dir.mkdir(parents=True, exist_ok=True)
        temp_file = self._state_file.with_suffix(".tmp")
        try:
            temp_file.write_text(json.dumps(state, indent=2, default=str))
            temp_file.replace(self._state_file)
        except IOError as e:
            logger.error(f"Failed to save state file: {e}")
            if temp_file.exists():
                temp_file.unlink()
