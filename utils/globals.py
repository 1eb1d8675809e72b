from typing import Dict, Tuple

# Fulfiller roles. Cook and delivery assignments are independent machines on the same order.
ROLE_COOK = "cook"
ROLE_DELIVERY = "delivery"
ROLES = (ROLE_COOK, ROLE_DELIVERY)

# Order columns owned by the allocation engine, per role:
# (assigned fulfiller id, assignment status, assigned-at timestamp)
ROLE_FIELDS: Dict[str, Tuple[str, str, str]] = {
    ROLE_COOK: ("assigned_cook_id", "cook_assignment_status", "cook_assigned_at"),
    ROLE_DELIVERY: ("assigned_delivery_id", "delivery_assignment_status", "delivery_assigned_at"),
}

# Order lifecycle
ORDER_PENDING = "pending"
ORDER_CONFIRMED = "confirmed"
ORDER_PREPARING = "preparing"
ORDER_READY = "ready"
ORDER_DELIVERED = "delivered"
ORDER_CANCELLED = "cancelled"
ORDER_STATUSES = (ORDER_PENDING, ORDER_CONFIRMED, ORDER_PREPARING, ORDER_READY, ORDER_DELIVERED, ORDER_CANCELLED)
ORDER_TERMINAL = (ORDER_DELIVERED, ORDER_CANCELLED)

# Assignment status stored on the order
ASSIGN_UNASSIGNED = "unassigned"
ASSIGN_PENDING = "pending"
ASSIGN_ACCEPTED = "accepted"
ASSIGN_ACTIVE = (ASSIGN_PENDING, ASSIGN_ACCEPTED)

# Outcomes recorded in the append-only assignment history
OUTCOME_ASSIGNED = "assigned"
OUTCOME_ACCEPTED = "accepted"
OUTCOME_REJECTED = "rejected"
OUTCOME_CANCELLED = "cancelled"
TIMEOUT_NOTE = "timeout"

# Referral commissions: the only legal moves, in order.
COMMISSION_PENDING = "pending"
COMMISSION_APPROVED = "approved"
COMMISSION_PAID = "paid"
COMMISSION_TRANSITIONS = {
    COMMISSION_PENDING: COMMISSION_APPROVED,
    COMMISSION_APPROVED: COMMISSION_PAID,
}

SERVICE_TYPES = ("indoor_events", "cloud_kitchen", "homemade")

MARGIN_PERCENT = "percent"
MARGIN_FIXED = "fixed"

PAYMENT_COD = "cod"

UNKNOWN = "Unknown"
