"""Initial matching and scheduling schema

Revision ID: 0001_initial_schema
Revises:
Create Date: 2024-01-01 00:00:00.000000

"""

from alembic import op
import sqlalchemy as sa

from hemolink.db.base import GUID


# revision identifiers, used by Alembic.
revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "donors",
        sa.Column("id", GUID(), primary_key=True),
        sa.Column("full_name", sa.String(150), nullable=True),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("phone", sa.String(30), nullable=True),
        sa.Column("blood_group", sa.String(3), nullable=True),
        sa.Column("location", sa.String(255), nullable=True),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        sa.Column("eligibility_status", sa.String(50), nullable=True),
        sa.Column("last_donation_date", sa.Date(), nullable=True),
        sa.Column("donation_count", sa.Integer(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_donors_email", "donors", ["email"], unique=True)
    op.create_index("ix_donors_blood_group", "donors", ["blood_group"])
    op.create_index("ix_donors_created_at", "donors", ["created_at"])
    op.create_index("idx_donor_group_status", "donors", ["blood_group", "eligibility_status"])

    op.create_table(
        "patients",
        sa.Column("id", GUID(), primary_key=True),
        sa.Column("full_name", sa.String(150), nullable=True),
        sa.Column("blood_group", sa.String(3), nullable=True),
        sa.Column("location", sa.String(255), nullable=True),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_patients_created_at", "patients", ["created_at"])

    op.create_table(
        "hospitals",
        sa.Column("id", GUID(), primary_key=True),
        sa.Column("name", sa.String(150), nullable=False),
        sa.Column("address", sa.String(255), nullable=True),
        sa.Column("contact", sa.String(50), nullable=True),
        sa.Column("verified", sa.Boolean(), nullable=True),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_hospitals_verified", "hospitals", ["verified"])
    op.create_index("ix_hospitals_created_at", "hospitals", ["created_at"])

    op.create_table(
        "hospital_stock",
        sa.Column("id", GUID(), primary_key=True),
        sa.Column(
            "hospital_id",
            GUID(),
            sa.ForeignKey("hospitals.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("blood_group", sa.String(3), nullable=False),
        sa.Column("component", sa.String(50), nullable=False),
        sa.Column("units", sa.Integer(), nullable=False),
        sa.Column("collection_date", sa.Date(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_hospital_stock_hospital_id", "hospital_stock", ["hospital_id"])
    op.create_index("ix_hospital_stock_blood_group", "hospital_stock", ["blood_group"])
    op.create_index("ix_hospital_stock_component", "hospital_stock", ["component"])
    op.create_index("ix_hospital_stock_created_at", "hospital_stock", ["created_at"])
    op.create_index("idx_stock_component_group", "hospital_stock", ["component", "blood_group"])
    op.create_index("idx_stock_hospital_component", "hospital_stock", ["hospital_id", "component"])

    op.create_table(
        "blood_requests",
        sa.Column("id", GUID(), primary_key=True),
        sa.Column(
            "patient_id",
            GUID(),
            sa.ForeignKey("patients.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "request_type",
            sa.Enum("EMERGENCY", "SCHEDULED", name="requesttype"),
            nullable=False,
        ),
        sa.Column("blood_group", sa.String(3), nullable=False),
        sa.Column("component", sa.String(50), nullable=True),
        sa.Column("quantity_units", sa.Integer(), nullable=False),
        sa.Column(
            "urgency",
            sa.Enum("CRITICAL", "HIGH", "MEDIUM", "LOW", name="urgency"),
            nullable=False,
        ),
        sa.Column(
            "status",
            sa.Enum("PENDING", "ACCEPTED", "FULFILLED", "CANCELLED", name="requeststatus"),
            nullable=False,
        ),
        sa.Column("patient_latitude", sa.Float(), nullable=True),
        sa.Column("patient_longitude", sa.Float(), nullable=True),
        sa.Column("radius_km", sa.Float(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_blood_requests_patient_id", "blood_requests", ["patient_id"])
    op.create_index("ix_blood_requests_blood_group", "blood_requests", ["blood_group"])
    op.create_index("ix_blood_requests_urgency", "blood_requests", ["urgency"])
    op.create_index("ix_blood_requests_status", "blood_requests", ["status"])
    op.create_index("ix_blood_requests_created_at", "blood_requests", ["created_at"])
    op.create_index("idx_request_patient_status", "blood_requests", ["patient_id", "status"])
    op.create_index(
        "idx_request_group_urgency", "blood_requests", ["blood_group", "urgency", "status"]
    )

    op.create_table(
        "request_broadcasts",
        sa.Column("id", GUID(), primary_key=True),
        sa.Column(
            "request_id",
            GUID(),
            sa.ForeignKey("blood_requests.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("blood_group", sa.String(3), nullable=False),
        sa.Column("radius_km", sa.Float(), nullable=False),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        sa.Column("recipient_count", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_request_broadcasts_request_id", "request_broadcasts", ["request_id"])
    op.create_index("ix_request_broadcasts_created_at", "request_broadcasts", ["created_at"])

    op.create_table(
        "broadcast_recipients",
        sa.Column("id", GUID(), primary_key=True),
        sa.Column(
            "broadcast_id",
            GUID(),
            sa.ForeignKey("request_broadcasts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "donor_id",
            GUID(),
            sa.ForeignKey("donors.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("distance_km", sa.Float(), nullable=True),
        sa.Column(
            "delivery_status",
            sa.Enum("QUEUED", "SENT", "FAILED", name="deliverystatus"),
            nullable=False,
        ),
    )
    op.create_index(
        "ix_broadcast_recipients_broadcast_id", "broadcast_recipients", ["broadcast_id"]
    )
    op.create_index("ix_broadcast_recipients_donor_id", "broadcast_recipients", ["donor_id"])

    op.create_table(
        "cohorts",
        sa.Column("id", GUID(), primary_key=True),
        sa.Column(
            "patient_id",
            GUID(),
            sa.ForeignKey("patients.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_cohorts_patient_id", "cohorts", ["patient_id"])
    op.create_index("ix_cohorts_created_at", "cohorts", ["created_at"])
    op.create_index(
        "uq_cohort_active_patient",
        "cohorts",
        ["patient_id"],
        unique=True,
        sqlite_where=sa.text("is_active = 1"),
        postgresql_where=sa.text("is_active"),
    )

    op.create_table(
        "cohort_memberships",
        sa.Column("id", GUID(), primary_key=True),
        sa.Column(
            "cohort_id",
            GUID(),
            sa.ForeignKey("cohorts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "donor_id",
            GUID(),
            sa.ForeignKey("donors.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("sequence_order", sa.Integer(), nullable=False),
        sa.Column("last_donation_date", sa.Date(), nullable=True),
        sa.Column("next_scheduled_for", sa.DateTime(), nullable=True),
        sa.UniqueConstraint("cohort_id", "sequence_order", name="uq_membership_order"),
        sa.UniqueConstraint("cohort_id", "donor_id", name="uq_membership_donor"),
    )
    op.create_index("ix_cohort_memberships_cohort_id", "cohort_memberships", ["cohort_id"])
    op.create_index("ix_cohort_memberships_donor_id", "cohort_memberships", ["donor_id"])

    op.create_table(
        "transfusion_schedules",
        sa.Column("id", GUID(), primary_key=True),
        sa.Column(
            "patient_id",
            GUID(),
            sa.ForeignKey("patients.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "cohort_id",
            GUID(),
            sa.ForeignKey("cohorts.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("cycle_number", sa.Integer(), nullable=False),
        sa.Column("scheduled_for", sa.DateTime(), nullable=True),
        sa.Column(
            "status",
            sa.Enum("PLANNED", "BOOKED", "COMPLETED", "CANCELLED", name="schedulestatus"),
            nullable=False,
        ),
        sa.Column("component", sa.String(50), nullable=False),
        sa.Column("units", sa.Integer(), nullable=False),
        sa.Column(
            "hospital_id",
            GUID(),
            sa.ForeignKey("hospitals.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "assigned_donor_id",
            GUID(),
            sa.ForeignKey("donors.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("used_emergency_backup", sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("patient_id", "cycle_number", name="uq_schedule_patient_cycle"),
    )
    op.create_index("ix_transfusion_schedules_patient_id", "transfusion_schedules", ["patient_id"])
    op.create_index("ix_transfusion_schedules_cohort_id", "transfusion_schedules", ["cohort_id"])
    op.create_index(
        "ix_transfusion_schedules_scheduled_for", "transfusion_schedules", ["scheduled_for"]
    )
    op.create_index("ix_transfusion_schedules_status", "transfusion_schedules", ["status"])
    op.create_index(
        "ix_transfusion_schedules_hospital_id", "transfusion_schedules", ["hospital_id"]
    )
    op.create_index(
        "ix_transfusion_schedules_assigned_donor_id",
        "transfusion_schedules",
        ["assigned_donor_id"],
    )
    op.create_index(
        "ix_transfusion_schedules_created_at", "transfusion_schedules", ["created_at"]
    )
    op.create_index(
        "uq_schedule_open_patient",
        "transfusion_schedules",
        ["patient_id"],
        unique=True,
        sqlite_where=sa.text("status IN ('PLANNED', 'BOOKED')"),
        postgresql_where=sa.text("status IN ('PLANNED', 'BOOKED')"),
    )
    op.create_index(
        "idx_schedule_patient_date", "transfusion_schedules", ["patient_id", "scheduled_for"]
    )

    op.create_table(
        "transfusion_records",
        sa.Column("id", GUID(), primary_key=True),
        sa.Column(
            "patient_id",
            GUID(),
            sa.ForeignKey("patients.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "schedule_id",
            GUID(),
            sa.ForeignKey("transfusion_schedules.id", ondelete="SET NULL"),
            nullable=True,
            unique=True,
        ),
        sa.Column("occurred_at", sa.DateTime(), nullable=False),
        sa.Column("component", sa.String(50), nullable=False),
        sa.Column("units", sa.Integer(), nullable=False),
        sa.Column(
            "hospital_id",
            GUID(),
            sa.ForeignKey("hospitals.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "donor_id",
            GUID(),
            sa.ForeignKey("donors.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("donor_label", sa.String(150), nullable=True),
        sa.Column("cycle_number", sa.Integer(), nullable=True),
    )
    op.create_index("ix_transfusion_records_patient_id", "transfusion_records", ["patient_id"])
    op.create_index("ix_transfusion_records_occurred_at", "transfusion_records", ["occurred_at"])

    op.create_table(
        "engine_events",
        sa.Column("id", GUID(), primary_key=True),
        sa.Column("event_type", sa.String(50), nullable=False),
        sa.Column("aggregate_id", GUID(), nullable=False),
        sa.Column("patient_id", GUID(), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_engine_events_event_type", "engine_events", ["event_type"])
    op.create_index("ix_engine_events_created_at", "engine_events", ["created_at"])
    op.create_index(
        "idx_event_patient_created", "engine_events", ["patient_id", "created_at"]
    )


def downgrade():
    op.drop_table("engine_events")
    op.drop_table("transfusion_records")
    op.drop_table("transfusion_schedules")
    op.drop_table("cohort_memberships")
    op.drop_table("cohorts")
    op.drop_table("broadcast_recipients")
    op.drop_table("request_broadcasts")
    op.drop_table("blood_requests")
    op.drop_table("hospital_stock")
    op.drop_table("hospitals")
    op.drop_table("patients")
    op.drop_table("donors")

    for enum_name in (
        "schedulestatus",
        "deliverystatus",
        "requeststatus",
        "urgency",
        "requesttype",
    ):
        sa.Enum(name=enum_name).drop(op.get_bind(), checkfirst=True)
