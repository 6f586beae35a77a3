"""Ordered, durable conversation log.

The store is the only owner of turns. Every mutation rewrites the whole list
to a single JSON file; a missing or unreadable file means an empty
conversation, never a startup failure.
"""

import json
import os
from pathlib import Path
from typing import List, Optional, Tuple, Union

from loguru import logger

from meera.models import Turn
from meera.schema import ChatHistoryMessage, to_history


class ConversationStore:
    """Append-only list of user/model turns with local persistence."""

    def __init__(self, path: Optional[Union[str, Path]] = None):
        """
        Args:
            path: JSON file holding the turn list. None keeps the conversation in memory only.
        """
        self.path = Path(path).expanduser() if path else None
        self._turns: List[Turn] = self._load()

    @property
    def turns(self) -> Tuple[Turn, ...]:
        return tuple(self._turns)

    @property
    def last(self) -> Optional[Turn]:
        return self._turns[-1] if self._turns else None

    def __len__(self) -> int:
        return len(self._turns)

    def append(self, turn: Turn) -> Turn:
        self._turns.append(turn)
        self._save()
        return turn

    def update_last(self, content: str) -> bool:
        """Replace the content of the in-progress model turn.

        Returns:
            False (and changes nothing) if the last turn is missing or is a user turn
        """
        last = self.last
        if last is None or last.role != "model":
            logger.warning("[STORE] update_last ignored: last turn is not a model turn")
            return False
        if last.content == content:
            return True
        last.content = content
        self._save()
        return True

    def rollback_last(self) -> Optional[Turn]:
        """Remove and return the most recently appended turn."""
        if not self._turns:
            return None
        turn = self._turns.pop()
        self._save()
        return turn

    def _find(self, turn_id: str) -> Optional[Turn]:
        for t in self._turns:
            if t.id == turn_id:
                return t
        return None

    def confirm(self, turn_id: str) -> bool:
        turn = self._find(turn_id)
        if turn is None:
            return False
        turn.status = "confirmed"
        self._save()
        return True

    def mark_failed(self, turn_id: str) -> bool:
        turn = self._find(turn_id)
        if turn is None:
            return False
        turn.status = "failed"
        self._save()
        return True

    def remove(self, turn_id: str) -> Optional[Turn]:
        turn = self._find(turn_id)
        if turn is None:
            return None
        self._turns.remove(turn)
        self._save()
        return turn

    def clear(self) -> None:
        self._turns = []
        self._save()

    def history(self, exclude: Optional[str] = None) -> List[ChatHistoryMessage]:
        """Settled turns (not pending) in the remote chat schema, oldest first."""
        return to_history(
            t for t in self._turns
            if t.status != "pending" and t.id != exclude
        )

    def _load(self) -> List[Turn]:
        if self.path is None or not self.path.exists():
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            if not isinstance(raw, list):
                raise ValueError("history file does not hold a list")
            turns = [Turn.from_dict(item) for item in raw]
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"[STORE] Could not restore conversation from {self.path}, starting empty: {e}")
            return []

        # Nothing can still be in flight for a turn restored from disk
        for t in turns:
            if t.status == "pending":
                t.status = "failed"
        logger.info(f"[STORE] Restored {len(turns)} turns from {self.path}")
        return turns

    def _save(self) -> None:
        if self.path is None:
            return
        payload = json.dumps([t.to_dict() for t in self._turns], ensure_ascii=False)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(payload, encoding="utf-8")
            os.replace(tmp, self.path)
        except OSError as e:
            logger.warning(f"[STORE] Could not persist conversation to {self.path}: {e}")
