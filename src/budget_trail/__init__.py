"""
Budget Trail - Auditable budget allocation core

Tracks budget requests through an approval lifecycle, allocates them down a
budget -> department -> project -> vendor hierarchy, and binds every
allocation event to a fingerprint so tampering can be detected later.

Fun fact: the word "budget" comes from the Old French "bougette", a small
leather purse. Britain's Chancellor still carries the budget in a red box.
"""

from budget_trail.trail import BudgetTrail

__version__ = "0.1.0"
__all__ = ["BudgetTrail", "__version__"]
