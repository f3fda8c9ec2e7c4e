"""
Donor readiness classification.

The donor-profile service hands us an opaque status label ("eligible",
"deferred_14d", "Eligible - verified", ...). Matching must never abort on
an odd label, so everything unrecognised classifies as not ready.
"""

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Optional

logger = logging.getLogger(__name__)

DONATION_COOLDOWN_DAYS = 90

_NEGATED = re.compile(r"\b(in|not[\s_-]?|non[\s_-]?)eligible")
_DEFERRAL = re.compile(r"defer")


class EligibilityLabel(str, Enum):
    ELIGIBLE = "eligible"
    COOLDOWN = "cooldown"
    DEFERRED = "deferred"
    INELIGIBLE = "ineligible"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class EligibilityResult:
    ready: bool
    label: EligibilityLabel
    next_eligible_on: Optional[date] = None


def coerce_date(value: Any) -> Optional[date]:
    """Accept date, datetime or ISO string; anything else becomes None."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value.strip():
        text = value.strip()
        try:
            return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
        except ValueError:
            try:
                return date.fromisoformat(text[:10])
            except ValueError:
                logger.debug(f"Ignoring malformed donation date: {text!r}")
    return None


def classify_eligibility(
    status: Any,
    last_donation_date: Any = None,
    today: Optional[date] = None,
    cooldown_days: int = DONATION_COOLDOWN_DAYS,
) -> EligibilityResult:
    """
    Map a raw status label and donation history to a readiness verdict.

    A donor is ready when the label denotes an eligible state and the
    cooldown since the last donation has elapsed.
    """
    if not isinstance(status, str) or not status.strip():
        return EligibilityResult(ready=False, label=EligibilityLabel.UNKNOWN)

    normalized = status.strip().lower()

    if _NEGATED.search(normalized):
        return EligibilityResult(ready=False, label=EligibilityLabel.INELIGIBLE)

    if _DEFERRAL.search(normalized):
        return EligibilityResult(ready=False, label=EligibilityLabel.DEFERRED)

    if "eligible" not in normalized:
        return EligibilityResult(ready=False, label=EligibilityLabel.UNKNOWN)

    today = today or date.today()
    last_donation = coerce_date(last_donation_date)
    if last_donation is not None and cooldown_days > 0:
        next_eligible_on = last_donation + timedelta(days=cooldown_days)
        if today < next_eligible_on:
            return EligibilityResult(
                ready=False,
                label=EligibilityLabel.COOLDOWN,
                next_eligible_on=next_eligible_on,
            )

    return EligibilityResult(ready=True, label=EligibilityLabel.ELIGIBLE)
