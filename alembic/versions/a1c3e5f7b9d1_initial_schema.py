"""initial schema

Revision ID: a1c3e5f7b9d1
Revises:
Create Date: 2026-10-19

"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "a1c3e5f7b9d1"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

MONEY = sa.Numeric(precision=12, scale=2)


def _enum(name: str, *members: str) -> sa.Enum:
    return sa.Enum(*members, name=name, native_enum=False)


def _base_columns() -> list[sa.Column]:
    return [
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


ROLE = ("ADMIN", "MANAGER", "USER", "ACCOUNTING_MANAGER", "ORG_ADMIN")
ACTION_TYPE = ("BLOCK", "WARN", "REQUIRE_APPROVAL")
TRAVEL_CATEGORY = ("FLIGHTS", "ACCOMMODATION", "MEALS", "TRANSPORT", "OTHER")


def upgrade() -> None:
    op.create_table(
        "identity_organization",
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("home_country", sa.String(length=100), nullable=True),
        sa.Column("home_currency", sa.String(length=3), nullable=False),
        sa.Column(
            "accounting_type", _enum("accountingtype", "INTERNAL", "EXTERNAL"), nullable=False
        ),
        sa.Column("external_accounting_email", sa.String(length=320), nullable=True),
        sa.Column("external_accounting_name", sa.String(length=200), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        *_base_columns(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name"),
    )

    op.create_table(
        "policy_employee_grade",
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("level", sa.Integer(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        *_base_columns(),
        sa.ForeignKeyConstraint(["organization_id"], ["identity_organization.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_policy_employee_grade_organization_id"),
        "policy_employee_grade",
        ["organization_id"],
    )

    op.create_table(
        "identity_user",
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("full_name", sa.String(length=200), nullable=True),
        sa.Column("username", sa.String(length=100), nullable=True),
        sa.Column("department", sa.String(length=200), nullable=True),
        sa.Column("employee_number", sa.String(length=50), nullable=True),
        sa.Column("password_hash", sa.String(length=200), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=True),
        sa.Column("manager_id", sa.Uuid(), nullable=True),
        sa.Column("grade_id", sa.Uuid(), nullable=True),
        sa.Column("is_manager", sa.Boolean(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        *_base_columns(),
        sa.ForeignKeyConstraint(["organization_id"], ["identity_organization.id"]),
        sa.ForeignKeyConstraint(["manager_id"], ["identity_user.id"]),
        sa.ForeignKeyConstraint(["grade_id"], ["policy_employee_grade.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_identity_user_email"), "identity_user", ["email"], unique=True)
    op.create_index(op.f("ix_identity_user_organization_id"), "identity_user", ["organization_id"])
    op.create_index(op.f("ix_identity_user_manager_id"), "identity_user", ["manager_id"])

    op.create_table(
        "identity_user_role",
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("role", _enum("role", *ROLE), nullable=False),
        *_base_columns(),
        sa.ForeignKeyConstraint(["user_id"], ["identity_user.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "role", name="uq_identity_user_role"),
    )
    op.create_index(op.f("ix_identity_user_role_user_id"), "identity_user_role", ["user_id"])
    op.create_index(op.f("ix_identity_user_role_role"), "identity_user_role", ["role"])

    op.create_table(
        "identity_invitation_code",
        sa.Column("code", sa.String(length=32), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("role", _enum("role", *ROLE), nullable=False),
        sa.Column("manager_id", sa.Uuid(), nullable=True),
        sa.Column("grade_id", sa.Uuid(), nullable=True),
        sa.Column("created_by_user_id", sa.Uuid(), nullable=True),
        sa.Column("invited_email", sa.String(length=320), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("max_uses", sa.Integer(), nullable=False),
        sa.Column("use_count", sa.Integer(), nullable=False),
        sa.Column("is_used", sa.Boolean(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("used_by_user_id", sa.Uuid(), nullable=True),
        *_base_columns(),
        sa.ForeignKeyConstraint(["organization_id"], ["identity_organization.id"]),
        sa.ForeignKeyConstraint(["manager_id"], ["identity_user.id"]),
        sa.ForeignKeyConstraint(["grade_id"], ["policy_employee_grade.id"]),
        sa.ForeignKeyConstraint(["created_by_user_id"], ["identity_user.id"]),
        sa.ForeignKeyConstraint(["used_by_user_id"], ["identity_user.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_identity_invitation_code_code"), "identity_invitation_code", ["code"], unique=True
    )
    op.create_index(
        op.f("ix_identity_invitation_code_organization_id"),
        "identity_invitation_code",
        ["organization_id"],
    )

    op.create_table(
        "policy_travel_rule",
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("grade_id", sa.Uuid(), nullable=True),
        sa.Column("category", _enum("travelcategory", *TRAVEL_CATEGORY), nullable=False),
        sa.Column("max_amount", MONEY, nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column(
            "destination_type",
            _enum("destinationtype", "DOMESTIC", "INTERNATIONAL", "ALL"),
            nullable=False,
        ),
        sa.Column("destination_countries", sa.JSON(), nullable=False),
        sa.Column("per_type", _enum("pertype", "PER_DAY", "PER_TRIP", "PER_ITEM"), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        *_base_columns(),
        sa.ForeignKeyConstraint(["organization_id"], ["identity_organization.id"]),
        sa.ForeignKeyConstraint(["grade_id"], ["policy_employee_grade.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_policy_travel_rule_organization_id"), "policy_travel_rule", ["organization_id"]
    )
    op.create_index(op.f("ix_policy_travel_rule_category"), "policy_travel_rule", ["category"])

    op.create_table(
        "policy_restriction",
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("category", _enum("travelcategory", *TRAVEL_CATEGORY), nullable=True),
        sa.Column("keywords", sa.JSON(), nullable=False),
        sa.Column("action_type", _enum("actiontype", *ACTION_TYPE), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        *_base_columns(),
        sa.ForeignKeyConstraint(["organization_id"], ["identity_organization.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_policy_restriction_organization_id"), "policy_restriction", ["organization_id"]
    )

    op.create_table(
        "policy_custom_rule",
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("rule_name", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("condition_json", sa.JSON(), nullable=False),
        sa.Column("action_type", _enum("actiontype", *ACTION_TYPE), nullable=False),
        sa.Column("applies_to_grades", sa.JSON(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        *_base_columns(),
        sa.ForeignKeyConstraint(["organization_id"], ["identity_organization.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_policy_custom_rule_organization_id"), "policy_custom_rule", ["organization_id"]
    )

    op.create_table(
        "audit_policy_log",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=True),
        sa.Column(
            "action",
            _enum("auditaction", "CREATE", "UPDATE", "DELETE", "ACTIVATE", "DEACTIVATE"),
            nullable=False,
        ),
        sa.Column(
            "entity_type",
            _enum(
                "auditentitytype", "EMPLOYEE_GRADE", "TRAVEL_RULE", "RESTRICTION", "CUSTOM_RULE"
            ),
            nullable=False,
        ),
        sa.Column("entity_id", sa.Uuid(), nullable=True),
        sa.Column("entity_name", sa.String(length=200), nullable=True),
        sa.Column("old_values", sa.JSON(), nullable=True),
        sa.Column("new_values", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["organization_id"], ["identity_organization.id"]),
        sa.ForeignKeyConstraint(["user_id"], ["identity_user.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    for column in ("organization_id", "user_id", "action", "entity_type", "created_at"):
        op.create_index(op.f(f"ix_audit_policy_log_{column}"), "audit_policy_log", [column])

    op.create_table(
        "fx_rate",
        sa.Column("from_currency", sa.String(length=3), nullable=False),
        sa.Column("to_currency", sa.String(length=3), nullable=False),
        sa.Column("rate", sa.Numeric(precision=18, scale=8), nullable=False),
        sa.Column("as_of_date", sa.Date(), nullable=True),
        sa.Column("source", sa.String(length=100), nullable=True),
        *_base_columns(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("from_currency", "to_currency", name="uq_fx_pair"),
    )

    op.create_table(
        "approvals_chain",
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("is_default", sa.Boolean(), nullable=False),
        *_base_columns(),
        sa.ForeignKeyConstraint(["organization_id"], ["identity_organization.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_approvals_chain_organization_id"), "approvals_chain", ["organization_id"]
    )

    op.create_table(
        "approvals_chain_level",
        sa.Column("chain_id", sa.Uuid(), nullable=False),
        sa.Column("level_order", sa.Integer(), nullable=False),
        sa.Column(
            "level_type",
            _enum(
                "leveltype",
                "DIRECT_MANAGER",
                "SECOND_LINE_MANAGER",
                "ORG_ADMIN",
                "ACCOUNTING_MANAGER",
                "SPECIFIC_USER",
            ),
            nullable=False,
        ),
        sa.Column("specific_user_id", sa.Uuid(), nullable=True),
        sa.Column("is_required", sa.Boolean(), nullable=False),
        sa.Column("can_skip_if_approved_amount_under", MONEY, nullable=True),
        sa.Column("custom_message", sa.Text(), nullable=True),
        *_base_columns(),
        sa.ForeignKeyConstraint(["chain_id"], ["approvals_chain.id"]),
        sa.ForeignKeyConstraint(["specific_user_id"], ["identity_user.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("chain_id", "level_order", name="uq_approvals_chain_level_order"),
    )
    op.create_index(
        op.f("ix_approvals_chain_level_chain_id"), "approvals_chain_level", ["chain_id"]
    )

    op.create_table(
        "approvals_grade_assignment",
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("grade_id", sa.Uuid(), nullable=True),
        sa.Column("chain_id", sa.Uuid(), nullable=False),
        sa.Column("min_amount", MONEY, nullable=True),
        sa.Column("max_amount", MONEY, nullable=True),
        *_base_columns(),
        sa.ForeignKeyConstraint(["organization_id"], ["identity_organization.id"]),
        sa.ForeignKeyConstraint(["grade_id"], ["policy_employee_grade.id"]),
        sa.ForeignKeyConstraint(["chain_id"], ["approvals_chain.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_approvals_grade_assignment_organization_id"),
        "approvals_grade_assignment",
        ["organization_id"],
    )
    op.create_index(
        op.f("ix_approvals_grade_assignment_chain_id"), "approvals_grade_assignment", ["chain_id"]
    )

    op.create_table(
        "reports_report",
        sa.Column("employee_id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=True),
        sa.Column("approver_id", sa.Uuid(), nullable=True),
        sa.Column("trip_destination", sa.String(length=200), nullable=False),
        sa.Column("trip_purpose", sa.Text(), nullable=True),
        sa.Column("trip_start_date", sa.Date(), nullable=True),
        sa.Column("trip_end_date", sa.Date(), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("total_amount", MONEY, nullable=False),
        sa.Column(
            "status",
            _enum("reportstatus", "DRAFT", "OPEN", "PENDING_APPROVAL", "CLOSED"),
            nullable=False,
        ),
        sa.Column("manager_approval_token", sa.String(length=128), nullable=True),
        sa.Column("manager_approval_requested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("approved_by", sa.Uuid(), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("is_reimbursed", sa.Boolean(), nullable=False),
        sa.Column("reimbursed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reimbursed_by", sa.Uuid(), nullable=True),
        *_base_columns(),
        sa.ForeignKeyConstraint(["employee_id"], ["identity_user.id"]),
        sa.ForeignKeyConstraint(["organization_id"], ["identity_organization.id"]),
        sa.ForeignKeyConstraint(["approver_id"], ["identity_user.id"]),
        sa.ForeignKeyConstraint(["approved_by"], ["identity_user.id"]),
        sa.ForeignKeyConstraint(["reimbursed_by"], ["identity_user.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("manager_approval_token"),
    )
    for column in ("employee_id", "organization_id", "approver_id", "status"):
        op.create_index(op.f(f"ix_reports_report_{column}"), "reports_report", [column])

    op.create_table(
        "reports_expense",
        sa.Column("report_id", sa.Uuid(), nullable=False),
        sa.Column(
            "category",
            _enum(
                "expensecategory",
                "FLIGHTS",
                "ACCOMMODATION",
                "FOOD",
                "TRANSPORTATION",
                "MISCELLANEOUS",
            ),
            nullable=False,
        ),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("expense_date", sa.Date(), nullable=False),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("converted_amount", MONEY, nullable=False),
        sa.Column("fx_rate", sa.Numeric(precision=18, scale=8), nullable=False),
        sa.Column(
            "payment_method",
            _enum("paymentmethod", "COMPANY_CARD", "OUT_OF_POCKET"),
            nullable=False,
        ),
        sa.Column(
            "approval_status",
            _enum("expenseapprovalstatus", "PENDING", "APPROVED", "REJECTED"),
            nullable=False,
        ),
        sa.Column("manager_comment", sa.Text(), nullable=True),
        *_base_columns(),
        sa.ForeignKeyConstraint(["report_id"], ["reports_report.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_reports_expense_report_id"), "reports_expense", ["report_id"])

    op.create_table(
        "reports_receipt",
        sa.Column("expense_id", sa.Uuid(), nullable=False),
        sa.Column("uploaded_by_user_id", sa.Uuid(), nullable=False),
        sa.Column("filename", sa.String(length=300), nullable=False),
        sa.Column("content_type", sa.String(length=100), nullable=True),
        sa.Column("file_type", _enum("receiptfiletype", "IMAGE", "PDF", "OTHER"), nullable=False),
        sa.Column("byte_size", sa.Integer(), nullable=False),
        sa.Column("sha256", sa.String(length=64), nullable=False),
        sa.Column("storage_key", sa.String(length=500), nullable=False),
        *_base_columns(),
        sa.ForeignKeyConstraint(["expense_id"], ["reports_expense.id"]),
        sa.ForeignKeyConstraint(["uploaded_by_user_id"], ["identity_user.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_reports_receipt_expense_id"), "reports_receipt", ["expense_id"])

    op.create_table(
        "reports_history",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("report_id", sa.Uuid(), nullable=False),
        sa.Column(
            "action",
            _enum(
                "historyaction",
                "CREATED",
                "SUBMITTED",
                "APPROVED",
                "REJECTED",
                "EDITED",
                "REIMBURSED",
            ),
            nullable=False,
        ),
        sa.Column("performed_by", sa.Uuid(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["report_id"], ["reports_report.id"]),
        sa.ForeignKeyConstraint(["performed_by"], ["identity_user.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_reports_history_report_id"), "reports_history", ["report_id"])

    op.create_table(
        "travel_request",
        sa.Column("requester_id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=True),
        sa.Column("chain_id", sa.Uuid(), nullable=True),
        sa.Column("destination_city", sa.String(length=200), nullable=False),
        sa.Column("destination_country", sa.String(length=100), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("purpose", sa.String(length=200), nullable=False),
        sa.Column("purpose_details", sa.Text(), nullable=True),
        sa.Column("employee_notes", sa.Text(), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("estimated_flights", MONEY, nullable=False),
        sa.Column("estimated_accommodation_per_night", MONEY, nullable=False),
        sa.Column("estimated_meals_per_day", MONEY, nullable=False),
        sa.Column("estimated_transport", MONEY, nullable=False),
        sa.Column("estimated_other", MONEY, nullable=False),
        sa.Column("estimated_total", MONEY, nullable=False),
        sa.Column("approved_flights", MONEY, nullable=True),
        sa.Column("approved_accommodation_per_night", MONEY, nullable=True),
        sa.Column("approved_meals_per_day", MONEY, nullable=True),
        sa.Column("approved_transport", MONEY, nullable=True),
        sa.Column("approved_other", MONEY, nullable=True),
        sa.Column("approved_total", MONEY, nullable=True),
        sa.Column(
            "status",
            _enum(
                "travelrequeststatus",
                "DRAFT",
                "PENDING_APPROVAL",
                "APPROVED",
                "PARTIALLY_APPROVED",
                "REJECTED",
                "CANCELLED",
            ),
            nullable=False,
        ),
        sa.Column("current_approval_level", sa.Integer(), nullable=False),
        sa.Column("submission_count", sa.Integer(), nullable=False),
        sa.Column("requires_special_approval", sa.Boolean(), nullable=False),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("final_decision_at", sa.DateTime(timezone=True), nullable=True),
        *_base_columns(),
        sa.ForeignKeyConstraint(["requester_id"], ["identity_user.id"]),
        sa.ForeignKeyConstraint(["organization_id"], ["identity_organization.id"]),
        sa.ForeignKeyConstraint(["chain_id"], ["approvals_chain.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    for column in ("requester_id", "organization_id", "status"):
        op.create_index(op.f(f"ix_travel_request_{column}"), "travel_request", [column])

    op.create_table(
        "travel_request_approval",
        sa.Column("travel_request_id", sa.Uuid(), nullable=False),
        sa.Column("submission_round", sa.Integer(), nullable=False),
        sa.Column("approval_level", sa.Integer(), nullable=False),
        sa.Column("level_type", sa.String(length=50), nullable=False),
        sa.Column("approver_id", sa.Uuid(), nullable=True),
        sa.Column(
            "status",
            _enum("approvalstatus", "PENDING", "APPROVED", "REJECTED", "SKIPPED"),
            nullable=False,
        ),
        sa.Column(
            "decision",
            _enum("decision", "APPROVE", "APPROVE_WITH_CHANGES", "REJECT"),
            nullable=True,
        ),
        sa.Column("comments", sa.Text(), nullable=True),
        sa.Column("custom_message", sa.Text(), nullable=True),
        sa.Column("skip_reason", sa.Text(), nullable=True),
        sa.Column("decided_at", sa.DateTime(timezone=True), nullable=True),
        *_base_columns(),
        sa.ForeignKeyConstraint(["travel_request_id"], ["travel_request.id"]),
        sa.ForeignKeyConstraint(["approver_id"], ["identity_user.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "travel_request_id",
            "submission_round",
            "approval_level",
            name="uq_travel_approval_round_level",
        ),
    )
    for column in ("travel_request_id", "approver_id", "status"):
        op.create_index(
            op.f(f"ix_travel_request_approval_{column}"), "travel_request_approval", [column]
        )

    op.create_table(
        "travel_request_violation",
        sa.Column("travel_request_id", sa.Uuid(), nullable=False),
        sa.Column(
            "source",
            _enum("violationsource", "CATEGORY_LIMIT", "RESTRICTION", "CUSTOM_RULE"),
            nullable=False,
        ),
        sa.Column("rule_id", sa.Uuid(), nullable=True),
        sa.Column("rule_name", sa.String(length=200), nullable=False),
        sa.Column("category", sa.String(length=50), nullable=True),
        sa.Column("action_type", _enum("actiontype", *ACTION_TYPE), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("requested_amount", MONEY, nullable=True),
        sa.Column("policy_limit", MONEY, nullable=True),
        sa.Column("overage_amount", MONEY, nullable=True),
        sa.Column("overage_percentage", sa.Numeric(precision=9, scale=2), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=True),
        sa.Column("requires_special_approval", sa.Boolean(), nullable=False),
        sa.Column("employee_explanation", sa.Text(), nullable=True),
        sa.Column("explained_at", sa.DateTime(timezone=True), nullable=True),
        *_base_columns(),
        sa.ForeignKeyConstraint(["travel_request_id"], ["travel_request.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_travel_request_violation_travel_request_id"),
        "travel_request_violation",
        ["travel_request_id"],
    )

    op.create_table(
        "travel_approved_travel",
        sa.Column("travel_request_id", sa.Uuid(), nullable=False),
        sa.Column("employee_id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=True),
        sa.Column("approval_number", sa.String(length=20), nullable=False),
        sa.Column("destination_city", sa.String(length=200), nullable=False),
        sa.Column("destination_country", sa.String(length=100), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("purpose", sa.String(length=200), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("approved_budget", sa.JSON(), nullable=False),
        sa.Column("valid_from", sa.Date(), nullable=False),
        sa.Column("valid_until", sa.Date(), nullable=False),
        sa.Column("is_used", sa.Boolean(), nullable=False),
        sa.Column("expense_report_id", sa.Uuid(), nullable=True),
        *_base_columns(),
        sa.ForeignKeyConstraint(["travel_request_id"], ["travel_request.id"]),
        sa.ForeignKeyConstraint(["employee_id"], ["identity_user.id"]),
        sa.ForeignKeyConstraint(["organization_id"], ["identity_organization.id"]),
        sa.ForeignKeyConstraint(["expense_report_id"], ["reports_report.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("travel_request_id"),
        sa.UniqueConstraint("approval_number"),
    )
    op.create_index(
        op.f("ix_travel_approved_travel_employee_id"), "travel_approved_travel", ["employee_id"]
    )

    op.create_table(
        "notifications_notification",
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("type", sa.String(length=50), nullable=False),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("report_id", sa.Uuid(), nullable=True),
        sa.Column("travel_request_id", sa.Uuid(), nullable=True),
        sa.Column("is_read", sa.Boolean(), nullable=False),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        *_base_columns(),
        sa.ForeignKeyConstraint(["user_id"], ["identity_user.id"]),
        sa.ForeignKeyConstraint(["report_id"], ["reports_report.id"]),
        sa.ForeignKeyConstraint(["travel_request_id"], ["travel_request.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    for column in ("user_id", "type", "is_read"):
        op.create_index(
            op.f(f"ix_notifications_notification_{column}"), "notifications_notification", [column]
        )

    op.create_table(
        "exports_export_run",
        sa.Column("report_id", sa.Uuid(), nullable=False),
        sa.Column("requested_by_user_id", sa.Uuid(), nullable=False),
        sa.Column(
            "status",
            _enum("exportstatus", "QUEUED", "RUNNING", "COMPLETED", "FAILED"),
            nullable=False,
        ),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("summary_xlsx_key", sa.String(length=1024), nullable=True),
        sa.Column("supporting_pdf_key", sa.String(length=1024), nullable=True),
        sa.Column("deliver_to_accounting", sa.Boolean(), nullable=False),
        sa.Column("delivered_to", sa.Text(), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_base_columns(),
        sa.ForeignKeyConstraint(["report_id"], ["reports_report.id"]),
        sa.ForeignKeyConstraint(["requested_by_user_id"], ["identity_user.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_exports_export_run_report_id"), "exports_export_run", ["report_id"])
    op.create_index(op.f("ix_exports_export_run_status"), "exports_export_run", ["status"])


def downgrade() -> None:
    for table in (
        "exports_export_run",
        "notifications_notification",
        "travel_approved_travel",
        "travel_request_violation",
        "travel_request_approval",
        "travel_request",
        "reports_history",
        "reports_receipt",
        "reports_expense",
        "reports_report",
        "approvals_grade_assignment",
        "approvals_chain_level",
        "approvals_chain",
        "fx_rate",
        "audit_policy_log",
        "policy_custom_rule",
        "policy_restriction",
        "policy_travel_rule",
        "identity_invitation_code",
        "identity_user_role",
        "identity_user",
        "policy_employee_grade",
        "identity_organization",
    ):
        op.drop_table(table)
