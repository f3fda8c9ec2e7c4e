import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, List, Optional, Union
from uuid import UUID

from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm import selectinload

from hemolink.config import settings
from hemolink.exceptions import UpstreamUnavailable, ValidationError
from hemolink.models.hospital import Hospital, HospitalStock
from hemolink.schemas.hospital import (
    Compatibility,
    HospitalMatch,
    HospitalSort,
    HospitalSummary,
)
from hemolink.schemas.request import Urgency
from hemolink.utils.compatibility import donor_groups_for, normalize_blood_group
from hemolink.utils.geo import distance_between
from hemolink.utils.performance_monitor import performance_monitor

logger = logging.getLogger(__name__)

URGENT_LEVELS = (Urgency.CRITICAL, Urgency.HIGH)


@dataclass
class _HospitalAggregate:
    hospital: Hospital
    units: int = 0
    freshness_days: Optional[int] = None
    components: set = field(default_factory=set)
    exact_only: bool = True


def default_sort_for(urgency: Union[Urgency, str, None]) -> HospitalSort:
    """Urgent requests care about proximity, routine ones about volume."""
    try:
        level = Urgency(urgency) if urgency is not None else Urgency.MEDIUM
    except ValueError:
        level = Urgency.MEDIUM
    return HospitalSort.DISTANCE if level in URGENT_LEVELS else HospitalSort.UNITS


def _sort_matches(matches: List[HospitalMatch], sort: HospitalSort) -> None:
    if sort == HospitalSort.FRESHNESS:
        matches.sort(
            key=lambda m: (
                m.freshness_days is None,
                m.freshness_days if m.freshness_days is not None else 0,
                -m.units,
                m.name,
            )
        )
    elif sort == HospitalSort.DISTANCE:
        matches.sort(
            key=lambda m: (
                m.distance_km is None,
                m.distance_km if m.distance_km is not None else 0.0,
                -m.units,
                m.name,
            )
        )
    else:
        matches.sort(key=lambda m: (-m.units, m.name))


class HospitalMatcherService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def _load_stock(
        self, blood_group: Optional[str], component: Optional[str], compatibility: Optional[str]
    ) -> List[HospitalStock]:
        query = (
            select(HospitalStock)
            .options(selectinload(HospitalStock.hospital))
            .where(HospitalStock.units > 0)
        )
        if component:
            query = query.where(
                func.lower(HospitalStock.component) == component.strip().lower()
            )
        if blood_group:
            groups = donor_groups_for(blood_group, compatibility)
            query = query.where(func.upper(HospitalStock.blood_group).in_(groups))

        try:
            result = await self.db.execute(query)
        except SQLAlchemyError as e:
            logger.error(f"Stock lookup failed: {e}")
            raise UpstreamUnavailable("Hospital inventory is temporarily unavailable")
        return list(result.scalars().all())

    @performance_monitor
    async def find_matching_hospitals(
        self,
        blood_group: Optional[str] = None,
        component: Optional[str] = None,
        location: Optional[str] = None,
        urgency: Union[Urgency, str] = Urgency.MEDIUM,
        patient_lat: Optional[float] = None,
        patient_lng: Optional[float] = None,
        radius_km: Optional[float] = None,
        min_units: int = 1,
        sort: Optional[Union[HospitalSort, str]] = None,
        compatibility: Optional[str] = None,
        today: Optional[date] = None,
    ) -> List[HospitalMatch]:
        """
        Hospitals holding enough fresh matching stock.

        Rows older than their component's shelf life are discarded before
        units are summed, so expired stock never counts toward ``min_units``.
        """
        if min_units < 1:
            raise ValidationError("min_units must be at least 1")

        radius_km = settings.DEFAULT_SEARCH_RADIUS_KM if radius_km is None else radius_km
        today = today or date.today()
        requested_group = normalize_blood_group(blood_group)

        rows = await self._load_stock(requested_group, component, compatibility)

        aggregates: Dict[UUID, _HospitalAggregate] = {}
        stale_rows = 0
        for row in rows:
            freshness = row.freshness_days(today)
            if freshness > settings.shelf_life_for(row.component):
                stale_rows += 1
                continue

            aggregate = aggregates.get(row.hospital_id)
            if aggregate is None:
                aggregate = aggregates[row.hospital_id] = _HospitalAggregate(row.hospital)

            aggregate.units += row.units
            if aggregate.freshness_days is None or freshness < aggregate.freshness_days:
                aggregate.freshness_days = freshness
            aggregate.components.add(row.component)
            if requested_group and normalize_blood_group(row.blood_group) != requested_group:
                aggregate.exact_only = False

        needle = location.strip().lower() if location and location.strip() else None
        use_text_filter = needle is not None and (patient_lat is None or patient_lng is None)

        matches: List[HospitalMatch] = []
        for aggregate in aggregates.values():
            hospital = aggregate.hospital
            if aggregate.units < min_units:
                continue

            distance_km = distance_between(
                patient_lat, patient_lng, hospital.latitude, hospital.longitude
            )
            if distance_km is not None and distance_km > radius_km:
                continue

            if use_text_filter:
                haystack = f"{hospital.name or ''} {hospital.address or ''}".lower()
                if needle not in haystack:
                    continue

            perfect = bool(requested_group and component and aggregate.exact_only)
            matches.append(
                HospitalMatch(
                    hospital_id=hospital.id,
                    name=hospital.name,
                    address=hospital.address,
                    contact=hospital.contact,
                    verified=bool(hospital.verified),
                    units=aggregate.units,
                    freshness_days=aggregate.freshness_days,
                    distance_km=round(distance_km, 3) if distance_km is not None else None,
                    components=sorted(aggregate.components),
                    compatibility=Compatibility.PERFECT if perfect else Compatibility.GOOD,
                )
            )

        sort_order = HospitalSort(sort) if sort else default_sort_for(urgency)
        _sort_matches(matches, sort_order)

        logger.info(
            f"Hospital match: {len(matches)} hospitals, {stale_rows} stale rows skipped, "
            f"sorted by {sort_order.value}"
        )
        return matches

    async def list_hospitals(self, query: Optional[str] = None) -> List[HospitalSummary]:
        """Verified hospitals, optionally filtered by name or address."""
        stmt = select(Hospital).where(Hospital.verified.is_(True))
        if query and query.strip():
            pattern = f"%{query.strip()}%"
            stmt = stmt.where(
                or_(Hospital.name.ilike(pattern), Hospital.address.ilike(pattern))
            )
        stmt = stmt.order_by(Hospital.name)

        result = await self.db.execute(stmt)
        return [HospitalSummary.model_validate(h) for h in result.scalars().all()]
