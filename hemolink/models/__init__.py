from hemolink.models.donor import Donor
from hemolink.models.patient import Patient
from hemolink.models.hospital import Hospital, HospitalStock
from hemolink.models.request import BloodRequest, RequestBroadcast, BroadcastRecipient
from hemolink.models.cohort import Cohort, CohortMembership
from hemolink.models.transfusion import TransfusionSchedule, TransfusionRecord
from hemolink.models.event import EngineEvent

__all__ = [
    "Donor",
    "Patient",
    "Hospital",
    "HospitalStock",
    "BloodRequest",
    "RequestBroadcast",
    "BroadcastRecipient",
    "Cohort",
    "CohortMembership",
    "TransfusionSchedule",
    "TransfusionRecord",
    "EngineEvent",
]
