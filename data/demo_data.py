"""
Demo data for local development and tests.
In production, these rows come from the HR data warehouse.

Rows use the persisted column names. They are read-only seeds: the
in-memory repository copies them and never writes back here.
"""

LEAVE_TYPES = {
    "Annual Leave": {"max_days": 30, "description": "Paid annual leave"},
    "Sick Leave": {"max_days": 90, "description": "Sick leave with medical certificate"},
    "Maternity Leave": {"max_days": 98, "description": "Maternity leave"},
    "Unpaid Leave": {"max_days": 365, "description": "Exceptional unpaid leave"},
    "Special Permission": {"max_days": 3, "description": "Short special permission"},
}

EMPLOYEES = {
    "E001": {
        "user_id": "E001",
        "full_name": "Alice Martin",
        "role": "employee",
        "department": "Finance",
        "cell": "Accounting",
        "leave_balance": 25,
    },
    "E002": {
        "user_id": "E002",
        "full_name": "Karim Benali",
        "role": "employee",
        "department": "Finance",
        "cell": "Accounting",
        "leave_balance": 18,
    },
    "E003": {
        "user_id": "E003",
        "full_name": "Sophie Laurent",
        "role": "employee",
        "department": "Finance",
        "cell": "Treasury",
        "leave_balance": 12,
    },
    "E004": {
        "user_id": "E004",
        "full_name": "David Moreau",
        "role": "employee",
        "department": "Finance",
        "cell": "Treasury",
        "leave_balance": 2,
    },
    "E005": {
        "user_id": "E005",
        "full_name": "Nadia Haddad",
        "role": "employee",
        "department": "Finance",
        "cell": "Accounting",
        "leave_balance": 20,
    },
    "M001": {
        "user_id": "M001",
        "full_name": "Julien Petit",
        "role": "cell_manager",
        "department": "Finance",
        "cell": "Accounting",
        "leave_balance": 22,
    },
    "S001": {
        "user_id": "S001",
        "full_name": "Claire Dubois",
        "role": "service_chief",
        "department": "Finance",
        "cell": None,
        "leave_balance": 27,
    },
    "E101": {
        "user_id": "E101",
        "full_name": "Thomas Roux",
        "role": "employee",
        "department": "IT",
        "cell": "Infrastructure",
        "leave_balance": 15,
    },
    "E102": {
        "user_id": "E102",
        "full_name": "Lina Mercier",
        "role": "employee",
        "department": "IT",
        "cell": "Development",
        "leave_balance": 30,
    },
    "E103": {
        "user_id": "E103",
        "full_name": "Hugo Lefevre",
        "role": "employee",
        "department": "IT",
        "cell": "Development",
        "leave_balance": 9,
    },
    "H001": {
        "user_id": "H001",
        "full_name": "Emma Girard",
        "role": "hr",
        "department": "Human Resources",
        "cell": None,
        "leave_balance": 24,
    },
}

CONFLICT_RULES = [
    {
        "id": "R001",
        "department": "Finance",
        "period_start": None,
        "period_end": None,
        "min_employees_required": 3,
        "max_concurrent_leaves": None,
        "is_active": True,
    },
    {
        "id": "R002",
        "department": "Finance",
        "period_start": "2026-12-20",
        "period_end": "2026-12-31",
        "min_employees_required": 5,
        "max_concurrent_leaves": 2,
        "is_active": True,
    },
    {
        "id": "R003",
        "department": "IT",
        "period_start": None,
        "period_end": None,
        "min_employees_required": 1,
        "max_concurrent_leaves": 2,
        "is_active": True,
    },
    {
        "id": "R004",
        "department": "IT",
        "period_start": "2026-07-01",
        "period_end": "2026-08-31",
        "min_employees_required": 3,
        "max_concurrent_leaves": None,
        "is_active": False,
    },
]

SERVICE_SUBSTITUTIONS = [
    {
        "id": "SUB001",
        "original_user_id": "E002",
        "substitute_user_id": "E005",
        "department": "Finance",
        "start_date": "2026-11-02",
        "end_date": "2026-11-13",
    },
]

LEAVE_REQUESTS = [
    {
        "id": "LR001",
        "user_id": "E002",
        "type": "Annual Leave",
        "start_date": "2026-11-02",
        "end_date": "2026-11-06",
        "reason": "Family visit",
        "urgency": "normal",
        "status": "approved",
        "submitted_at": "2026-10-01T09:00:00+00:00",
        "n1_approver_id": "M001",
        "n1_decided_at": "2026-10-02T10:00:00+00:00",
        "n1_approved": True,
        "n2_approver_id": "S001",
        "n2_decided_at": "2026-10-03T11:00:00+00:00",
        "n2_approved": True,
        "hr_approver_id": "H001",
        "hr_decided_at": "2026-10-06T09:30:00+00:00",
        "hr_approved": True,
    },
    {
        "id": "LR002",
        "user_id": "E003",
        "type": "Annual Leave",
        "start_date": "2026-11-04",
        "end_date": "2026-11-05",
        "reason": None,
        "urgency": "normal",
        "status": "pending_service_chief",
        "submitted_at": "2026-10-05T14:30:00+00:00",
        "n1_approver_id": "M001",
        "n1_decided_at": "2026-10-06T16:00:00+00:00",
        "n1_approved": True,
    },
    {
        "id": "LR003",
        "user_id": "E101",
        "type": "Sick Leave",
        "start_date": "2026-10-26",
        "end_date": "2026-10-28",
        "reason": "Medical appointment",
        "urgency": "urgent",
        # Legacy status value, stored before the multi-level workflow
        "status": "pending",
        "submitted_at": "2026-10-12T08:15:00+00:00",
    },
    {
        "id": "LR004",
        "user_id": "E004",
        "type": "Annual Leave",
        "start_date": "2026-11-03",
        "end_date": "2026-11-04",
        "reason": None,
        "urgency": "normal",
        "status": "rejected",
        "submitted_at": "2026-10-02T10:00:00+00:00",
        "n1_approver_id": "M001",
        "n1_decided_at": "2026-10-03T08:45:00+00:00",
        "n1_approved": False,
        "n1_comment": "Quarter closing week",
    },
]
