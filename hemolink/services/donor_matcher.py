import logging
from datetime import date
from typing import Iterable, List, Optional
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from hemolink.config import settings
from hemolink.exceptions import UpstreamUnavailable, ValidationError
from hemolink.models.donor import Donor
from hemolink.schemas.donor import DonorMatch
from hemolink.utils.compatibility import donor_groups_for, normalize_blood_group
from hemolink.utils.eligibility import classify_eligibility
from hemolink.utils.geo import distance_between
from hemolink.utils.performance_monitor import performance_monitor

logger = logging.getLogger(__name__)


def _sort_key(match: DonorMatch):
    # Nearest first, unknown distances last, then most experienced donors
    donation_count = match.donation_count if match.donation_count is not None else -1
    if match.distance_km is None:
        return (1, 0.0, -donation_count)
    return (0, match.distance_km, -donation_count)


def rank_donors(
    donors: Iterable[Donor],
    patient_lat: Optional[float],
    patient_lng: Optional[float],
    radius_km: float,
    only_ready: bool = False,
    today: Optional[date] = None,
    cooldown_days: Optional[int] = None,
) -> List[DonorMatch]:
    """
    Turn candidate donors into ranked matches.

    Donors with a known distance beyond ``radius_km`` are dropped; donors
    with no usable coordinates are kept and sorted last.
    """
    today = today or date.today()
    cooldown = settings.DONATION_COOLDOWN_DAYS if cooldown_days is None else cooldown_days

    matches: List[DonorMatch] = []
    for donor in donors:
        distance_km = distance_between(
            patient_lat, patient_lng, donor.latitude, donor.longitude
        )
        if distance_km is not None and distance_km > radius_km:
            continue

        eligibility = classify_eligibility(
            donor.eligibility_status, donor.last_donation_date, today, cooldown
        )
        if only_ready and not eligibility.ready:
            continue

        matches.append(
            DonorMatch(
                donor_id=donor.id,
                full_name=donor.full_name,
                phone=donor.phone,
                blood_group=donor.blood_group,
                location=donor.location,
                eligibility_status=donor.eligibility_status,
                eligibility_label=eligibility.label.value,
                latitude=donor.latitude,
                longitude=donor.longitude,
                distance_km=round(distance_km, 3) if distance_km is not None else None,
                donation_count=donor.donation_count,
                ready=eligibility.ready,
            )
        )

    matches.sort(key=_sort_key)
    return matches


class DonorMatcherService:
    def __init__(self, db: AsyncSession):
        self.db = db

    @performance_monitor
    async def search_donors(
        self,
        blood_group: str,
        patient_lat: Optional[float] = None,
        patient_lng: Optional[float] = None,
        radius_km: Optional[float] = None,
        only_ready: bool = False,
        exclude_donor_ids: Iterable[UUID] = (),
        compatibility: Optional[str] = None,
        today: Optional[date] = None,
    ) -> List[DonorMatch]:
        """Rank donors able to give to ``blood_group`` around the patient."""
        if normalize_blood_group(blood_group) is None:
            raise ValidationError("blood_group is required")

        radius_km = settings.DEFAULT_SEARCH_RADIUS_KM if radius_km is None else radius_km
        if radius_km <= 0:
            raise ValidationError("radius_km must be greater than 0")

        groups = donor_groups_for(blood_group, compatibility)
        excluded = {donor_id for donor_id in exclude_donor_ids if donor_id is not None}

        query = select(Donor).where(func.upper(Donor.blood_group).in_(groups))
        if excluded:
            query = query.where(Donor.id.not_in(excluded))

        try:
            result = await self.db.execute(query)
            donors = result.scalars().all()
        except SQLAlchemyError as e:
            logger.error(f"Donor search failed for {blood_group}: {e}")
            raise UpstreamUnavailable("Donor profiles are temporarily unavailable")

        matches = rank_donors(
            donors, patient_lat, patient_lng, radius_km, only_ready, today
        )

        logger.info(
            f"Donor search {blood_group} within {radius_km}km: "
            f"{len(matches)} of {len(donors)} candidates matched"
        )
        return matches
