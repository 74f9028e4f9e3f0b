"""Appointment booking and scheduling engine."""

from .access_gate import SessionAccessGate
from .actions import BookingActions, get_booking_actions
from .appointments import AppointmentStateMachine
from .coaches import CoachDirectory, compute_coach_stats
from .discounts import DiscountEvaluator, apply_discount
from .orchestrator import BookingOrchestrator
from .slots import SlotRegistry, plan_reconciliation

__all__ = [
    "AppointmentStateMachine",
    "BookingActions",
    "BookingOrchestrator",
    "CoachDirectory",
    "DiscountEvaluator",
    "SessionAccessGate",
    "SlotRegistry",
    "apply_discount",
    "compute_coach_stats",
    "get_booking_actions",
    "plan_reconciliation",
]
