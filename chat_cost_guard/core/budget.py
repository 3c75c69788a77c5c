"""
Per-user budget enforcement.

Determines how much a user may spend in the configured accounting period
and how much of it is left.

Ceiling order:
1. Admins, or a wildcard budget list - unlimited
2. Wildcard allowed-user list - the first budget entry applies to everyone
3. Allowed users - the budget at the same position in the budget list
4. Everyone else (guests) - the flat guest budget
"""

import logging
import math
from typing import Optional

from .errors import BudgetExceeded
from .ledger import CurrentCost, UsageLedger
from ..config.loader import BudgetConfig, BudgetPeriod

logger = logging.getLogger(__name__)


def is_admin(user_id: str, config: BudgetConfig) -> bool:
    """Check whether a user is on the admin list."""
    if not config.admin_user_ids:
        logger.debug("No admin user defined.")
        return False
    return str(user_id) in config.admin_user_ids


def is_guest(user_id: str, config: BudgetConfig) -> bool:
    """Check whether a user is neither allowed explicitly nor an admin."""
    if config.allows_everyone or is_admin(user_id, config):
        return False
    return str(user_id) not in config.allowed_user_ids


def _parse_budget(value: str, user_id: str) -> float:
    try:
        return float(value)
    except ValueError:
        logger.error("Error parsing budget %r for user id: %s", value, user_id)
        return 0.0


def get_user_budget(user_id: str, config: BudgetConfig) -> Optional[float]:
    """Get the spending ceiling of a user.

    Args:
        user_id: User identifier
        config: Budget configuration

    Returns:
        The ceiling (math.inf when unlimited), 0.0 when the budget list is
        misconfigured for this user, or None for guests
    """
    user_id = str(user_id)
    if is_admin(user_id, config) or config.unlimited_budgets:
        return math.inf

    if config.allows_everyone:
        if len(config.user_budgets) > 1:
            logger.warning(
                "Multiple values for budgets set with unrestricted user list; "
                "only the first value is used as budget for everyone."
            )
        if not config.user_budgets:
            logger.error("No budget set while every user is allowed.")
            return 0.0
        return _parse_budget(config.user_budgets[0], user_id)

    if user_id in config.allowed_user_ids:
        index = config.allowed_user_ids.index(user_id)
        if index >= len(config.user_budgets):
            logger.error(
                "No budget set for user id: %s. Budget list shorter than user list.",
                user_id,
            )
            return 0.0
        return _parse_budget(config.user_budgets[index], user_id)

    return None


def period_cost(cost: CurrentCost, period: BudgetPeriod) -> float:
    """Pick the cost of one accounting window."""
    if period == BudgetPeriod.DAILY:
        return cost.today
    if period == BudgetPeriod.MONTHLY:
        return cost.month
    return cost.all_time


def remaining_budget(user_id: str, ledger: UsageLedger, config: BudgetConfig) -> float:
    """Calculate the budget a user has left in the configured period.

    Args:
        user_id: User identifier
        ledger: Usage ledger of the user
        config: Budget configuration

    Returns:
        Remaining budget, math.inf for unlimited users
    """
    ceiling = get_user_budget(user_id, config)
    if ceiling is None:
        ceiling = config.guest_budget
    if math.isinf(ceiling):
        return math.inf
    return ceiling - period_cost(ledger.current_cost(), config.period)


def is_within_budget(user_id: str, ledger: UsageLedger, config: BudgetConfig) -> bool:
    """Check if the user has not reached their usage limit."""
    return remaining_budget(user_id, ledger, config) > 0


def check_budget(user_id: str, ledger: UsageLedger, config: BudgetConfig) -> float:
    """Enforce the budget of a user before a paid request.

    Returns:
        Remaining budget

    Raises:
        BudgetExceeded: If no budget is left
    """
    remaining = remaining_budget(user_id, ledger, config)
    if remaining <= 0:
        logger.info("User %s is over budget (%.4f remaining)", user_id, remaining)
        raise BudgetExceeded(str(user_id), remaining)
    return remaining
