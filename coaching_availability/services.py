import logging
from datetime import timedelta

from django.conf import settings
from django.db import DatabaseError
from django.db.models import F
from django.utils import timezone

from core.exceptions import PersistenceError, SlotFullError, SlotNotFoundError
from .models import TimeSlot

logger = logging.getLogger(__name__)


class SlotLedger:
    """
    The only place that changes slot occupancy.

    Every mutation is a single conditional UPDATE checked by its row count, so
    two requests racing for the last seat cannot both win.
    """

    @staticmethod
    def list_available_slots(coach, window_days=None):
        """
        Open slots for a coach starting between now and now + window_days,
        earliest first.
        """
        if window_days is None:
            window_days = settings.SLOT_LISTING_WINDOW_DAYS

        now = timezone.now()
        return TimeSlot.objects.filter(
            coach=coach,
            is_available=True,
            starts_at__gte=now,
            starts_at__lte=now + timedelta(days=window_days),
            current_bookings__lt=F('max_bookings'),
        ).order_by('starts_at')

    @staticmethod
    def reserve_slot(slot_id):
        """
        Takes one seat on the slot. Raises SlotFullError when the slot is full,
        switched off or already started.
        """
        now = timezone.now()
        try:
            updated = TimeSlot.objects.filter(
                pk=slot_id,
                is_available=True,
                starts_at__gt=now,
                current_bookings__lt=F('max_bookings'),
            ).update(current_bookings=F('current_bookings') + 1, updated_at=now)
        except DatabaseError as e:
            logger.error(f"Reserving slot {slot_id} failed: {e}", exc_info=True)
            raise PersistenceError(slot_id=slot_id) from e

        if updated == 0:
            if not TimeSlot.objects.filter(pk=slot_id).exists():
                raise SlotNotFoundError(slot_id=slot_id)
            logger.info(f"Slot {slot_id} could not be reserved: full or no longer bookable.")
            raise SlotFullError(slot_id=slot_id)

        slot = TimeSlot.objects.get(pk=slot_id)
        logger.info(f"Reserved slot {slot_id} ({slot.current_bookings}/{slot.max_bookings}).")
        return slot

    @staticmethod
    def release_slot(slot_id):
        """
        Gives a seat back. Used to undo a reservation whose booking did not go
        through. Returns False when there was nothing to release.
        """
        try:
            updated = TimeSlot.objects.filter(
                pk=slot_id,
                current_bookings__gt=0,
            ).update(current_bookings=F('current_bookings') - 1, updated_at=timezone.now())
        except DatabaseError as e:
            logger.error(f"Releasing slot {slot_id} failed: {e}", exc_info=True)
            raise PersistenceError(slot_id=slot_id) from e

        if updated == 0:
            logger.warning(f"Release requested for slot {slot_id} but it has no bookings to release.")
            return False

        logger.info(f"Released one booking on slot {slot_id}.")
        return True
