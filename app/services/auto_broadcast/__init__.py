"""
Auto Broadcast Service Layer
"""

from app.services.auto_broadcast.service import (
    RunRuleResult,
    eligibility_window,
    get_eligible_client_ids,
    run_rule,
    run_all_rules,
)

__all__ = [
    "RunRuleResult",
    "eligibility_window",
    "get_eligible_client_ids",
    "run_rule",
    "run_all_rules",
]
