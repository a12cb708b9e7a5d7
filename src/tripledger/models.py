"""
Alembic model import hook.

Importing this module ensures all SQLAlchemy models are registered on Base.metadata.
"""

from __future__ import annotations

# Import User first - other models have relationships to User
from tripledger.modules.identity.models import (  # noqa: F401
    InvitationCode,
    Organization,
    User,
    UserRoleAssignment,
)

from tripledger.modules.approvals.models import (  # noqa: F401
    ApprovalChain,
    ApprovalChainLevel,
    GradeChainAssignment,
)
from tripledger.modules.audit.models import PolicyAuditLog  # noqa: F401
from tripledger.modules.exports.models import ExportRun  # noqa: F401
from tripledger.modules.fx.models import FxRate  # noqa: F401
from tripledger.modules.notifications.models import Notification  # noqa: F401
from tripledger.modules.policy.models import (  # noqa: F401
    CustomTravelRule,
    EmployeeGrade,
    TravelPolicyRestriction,
    TravelPolicyRule,
)
from tripledger.modules.reports.models import Expense, Receipt, Report, ReportHistory  # noqa: F401
from tripledger.modules.travel.models import (  # noqa: F401
    ApprovedTravel,
    TravelRequest,
    TravelRequestApproval,
    TravelRequestViolation,
)
