import logging
from typing import Callable

from app.errors import EntryNotFound
from app.models import MistakeEntry

logger = logging.getLogger(__name__)

Listener = Callable[[dict], None]


class SessionLedger:
    """Visible record of one class session's analyzed utterances.

    Entries are kept most-recent-first by insertion time; completion order
    never reorders them. ``update`` is the only mutation path for an existing
    entry, so swapping a temporary id for the durable one and filling in the
    result happen in a single step that subscribers see as one event::

        {"type": "entry_added",   "session_id": 3, "entry": {...}}
        {"type": "entry_updated", "session_id": 3, "entry": {...}, "previous_id": "tmp-..."}
        {"type": "entry_removed", "session_id": 3, "entry_id": 17}
    """

    def __init__(self, session_id: int) -> None:
        self.session_id = session_id
        self._entries: list[MistakeEntry] = []
        self._listeners: list[Listener] = []

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._entries)

    def entries(self) -> list[MistakeEntry]:
        return list(self._entries)

    def get(self, entry_id: str | int) -> MistakeEntry:
        for entry in self._entries:
            if entry.id == entry_id:
                return entry
        raise EntryNotFound(f"Entry {entry_id} not in session {self.session_id}")

    def __contains__(self, entry_id: object) -> bool:
        return any(entry.id == entry_id for entry in self._entries)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def hydrate(self, entries: list[MistakeEntry]) -> None:
        """Load persisted history (already most-recent-first) behind any live entries."""
        known = {entry.id for entry in self._entries}
        self._entries.extend(entry for entry in entries if entry.id not in known)

    def insert(self, entry: MistakeEntry) -> None:
        self._entries.insert(0, entry)
        self._publish({"type": "entry_added", "entry": entry.to_dict()})

    def update(
        self, entry_id: str | int, *, new_id: str | int | None = None, **changes
    ) -> MistakeEntry:
        """Apply *changes* (and an optional id swap) to one entry in place."""
        entry = self.get(entry_id)
        if "status" in changes and changes["status"] != entry.status:
            entry.check_transition(changes["status"])
        for name, value in changes.items():
            if not hasattr(entry, name):
                raise AttributeError(f"MistakeEntry has no field {name!r}")
            setattr(entry, name, value)
        swapped = new_id is not None and new_id != entry_id
        if swapped:
            entry.id = new_id
        message = {"type": "entry_updated", "entry": entry.to_dict()}
        if swapped:
            message["previous_id"] = entry_id
        self._publish(message)
        return entry

    def remove(self, entry_id: str | int) -> MistakeEntry:
        entry = self.get(entry_id)
        self._entries.remove(entry)
        self._publish({"type": "entry_removed", "entry_id": entry_id})
        return entry

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, message: dict) -> None:
        message["session_id"] = self.session_id
        for fn in list(self._listeners):
            try:
                fn(message)
            except Exception:
                logger.exception("Ledger listener failed")
