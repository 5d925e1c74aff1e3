"""Read access to shared drop records."""

import logging
from abc import ABC, abstractmethod
from typing import Dict, Iterable, Optional

from models import DropRecord

logger = logging.getLogger(__name__)


class DropSourceError(Exception):
    """The drop store could not be read or written."""


class DropSource(ABC):
    """Abstract base class for the shared drop store."""

    @abstractmethod
    def get_drop(self, drop_id: str) -> Optional[DropRecord]:
        """
        Fetch the current state of a drop.

        Returns:
            The drop, or None if it no longer exists

        Raises:
            DropSourceError: if the store could not be read
        """
        pass

    @abstractmethod
    def record_claim(self, drop_id: str, user_id: str) -> None:
        """
        Append a user to the drop's claimed_by list.

        This is a plain read-modify-write; two concurrent claims can both
        pass the remaining-quantity check before either write lands.
        """
        pass


class InMemoryDropSource(DropSource):
    """Dict-backed drop store for local runs and tests."""

    def __init__(self, drops: Optional[Iterable[DropRecord]] = None):
        self._drops: Dict[str, DropRecord] = {d.id: d for d in drops or []}

    def put(self, drop: DropRecord):
        self._drops[drop.id] = drop

    def delete(self, drop_id: str):
        self._drops.pop(drop_id, None)

    def get_drop(self, drop_id: str) -> Optional[DropRecord]:
        drop = self._drops.get(drop_id)
        return drop.model_copy(deep=True) if drop else None

    def record_claim(self, drop_id: str, user_id: str) -> None:
        drop = self._drops.get(drop_id)
        if drop is None:
            raise DropSourceError(f"Drop {drop_id} not found")
        if user_id not in drop.claimed_by:
            drop.claimed_by.append(user_id)
        logger.debug(f"Recorded claim by {user_id} on drop {drop_id}")
