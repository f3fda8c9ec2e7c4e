"""Which donor blood groups may supply a recipient."""

from typing import Dict, FrozenSet, Optional

from hemolink.config import settings

EXACT = "exact"
ABO_RH = "abo_rh"

# Donor groups acceptable for each recipient group (red cells / whole blood)
RECIPIENT_COMPATIBILITY: Dict[str, FrozenSet[str]] = {
    "O-": frozenset({"O-"}),
    "O+": frozenset({"O-", "O+"}),
    "A-": frozenset({"O-", "A-"}),
    "A+": frozenset({"O-", "O+", "A-", "A+"}),
    "B-": frozenset({"O-", "B-"}),
    "B+": frozenset({"O-", "O+", "B-", "B+"}),
    "AB-": frozenset({"O-", "A-", "B-", "AB-"}),
    "AB+": frozenset({"O-", "O+", "A-", "A+", "B-", "B+", "AB-", "AB+"}),
}


def normalize_blood_group(blood_group: Optional[str]) -> Optional[str]:
    if not isinstance(blood_group, str):
        return None
    value = blood_group.strip().upper().replace(" ", "")
    return value or None


def donor_groups_for(blood_group: str, policy: Optional[str] = None) -> FrozenSet[str]:
    """
    Donor groups a search for ``blood_group`` should consider.

    ``exact`` returns only the group itself; ``abo_rh`` returns every group
    that can donate to it. Unknown groups always fall back to exact match.
    """
    policy = policy or settings.BLOOD_COMPATIBILITY_POLICY
    group = normalize_blood_group(blood_group)
    if group is None:
        return frozenset()
    if policy == ABO_RH and group in RECIPIENT_COMPATIBILITY:
        return RECIPIENT_COMPATIBILITY[group]
    return frozenset({group})
