import logging

from .models import CoachProfile

logger = logging.getLogger(__name__)


def normalise_tags(tags):
    return {t.strip().lower() for t in (tags or []) if t and t.strip()}


class CoachDirectory:
    """
    The coach listing the enrollment workflow picks from.
    Only coaches with an active account who accept new clients are listed.
    """

    def list_coaches(self, filter=None):
        filter = filter or {}
        coaches = CoachProfile.objects.select_related('user').filter(
            user__is_active=True,
            is_available_for_new_clients=True,
        ).order_by('-rating', 'id')

        min_rating = filter.get('min_rating')
        if min_rating is not None:
            coaches = coaches.filter(rating__gte=min_rating)

        wanted = normalise_tags(filter.get('specialties'))
        if not wanted:
            return list(coaches)

        # JSON list overlap is not portable across backends, so match in Python
        matched = [coach for coach in coaches if coach.specialty_set() & wanted]
        logger.debug(f"Coach directory matched {len(matched)} coaches for specialties {sorted(wanted)}")
        return matched
