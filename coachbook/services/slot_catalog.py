"""
Fixed catalog of bookable same-day time windows.

The catalog is identical for every coach. Slots are identified by their
label, which is also what booking records store.
"""

from datetime import time

from coachbook.errors import UnknownSlotError
from coachbook.models.schemas import TimeSlot

TIME_SLOTS: tuple[TimeSlot, ...] = (
    TimeSlot(label="6:00 AM - 8:00 AM", start=time(6, 0), end=time(8, 0)),
    TimeSlot(label="9:00 AM - 11:00 AM", start=time(9, 0), end=time(11, 0)),
    TimeSlot(label="12:00 PM - 2:00 PM", start=time(12, 0), end=time(14, 0)),
    TimeSlot(label="3:00 PM - 5:00 PM", start=time(15, 0), end=time(17, 0)),
    TimeSlot(label="6:00 PM - 8:00 PM", start=time(18, 0), end=time(20, 0)),
    TimeSlot(label="9:00 PM - 10:00 PM", start=time(21, 0), end=time(22, 0)),
)


class TimeSlotCatalog:
    def __init__(self, slots: tuple[TimeSlot, ...] = TIME_SLOTS) -> None:
        self._slots = slots
        self._by_label = {slot.label: slot for slot in slots}

    @property
    def slots(self) -> tuple[TimeSlot, ...]:
        return self._slots

    @property
    def labels(self) -> list[str]:
        return [slot.label for slot in self._slots]

    def get(self, label: str) -> TimeSlot:
        """Look up a slot by label, raising UnknownSlotError if absent."""
        slot = self._by_label.get(label)
        if slot is None:
            raise UnknownSlotError(label)
        return slot

    def __contains__(self, label: object) -> bool:
        return label in self._by_label

    def __len__(self) -> int:
        return len(self._slots)


slot_catalog = TimeSlotCatalog()
