"""Remedial actions applied to a calculation network."""

from __future__ import annotations

import logging
from typing import Iterable

from gridsens.contingency.model import Action, ActionType, OperatorStrategy
from gridsens.core.errors import ElementNotFoundError, ParameterError
from gridsens.network.elements import BranchType, PhaseControlMode
from gridsens.network.network_model import Network
from gridsens.topology.model import GridModel

logger = logging.getLogger(__name__)

_KIND = {
    ActionType.SWITCH: "Switch",
    ActionType.TERMINALS_CONNECTION: "Branch",
    ActionType.PHASE_TAP_CHANGER_POSITION: "Phase tap changer",
}


def index_actions(
    actions: Iterable[Action],
    operator_strategies: Iterable[OperatorStrategy],
    grid: GridModel | None = None,
) -> dict[str, Action]:
    """Index actions by id and check every strategy refers to known actions.

    Raises:
        ParameterError: duplicated action id.
        ElementNotFoundError: unknown action id in a strategy, or action
            element unknown to ``grid``.
    """
    by_id: dict[str, Action] = {}
    for action in actions:
        if action.id in by_id:
            raise ParameterError(f"Duplicated action id '{action.id}'")
        if grid is not None and action.element_id not in grid:
            raise ElementNotFoundError(_KIND[action.type], action.element_id)
        by_id[action.id] = action
    for strategy in operator_strategies:
        for action_id in strategy.action_ids:
            if action_id not in by_id:
                raise ElementNotFoundError("Action", action_id)
    return by_id


def apply_action(network: Network, action: Action) -> bool:
    """Apply ``action`` on ``network``.

    Returns False when the action element belongs to another network.

    Raises:
        ParameterError: the element cannot take this action (not a switch,
            no phase tap changer, tap position out of range).
    """
    branch = network.find_branch(action.element_id)
    if branch is None:
        logger.debug("Action '%s' element is not in network '%s'", action.id, network.id)
        return False

    if action.type == ActionType.SWITCH:
        if branch.branch_type != BranchType.SWITCH:
            raise ParameterError(f"Action '{action.id}': '{branch.id}' is not a switch")
        branch.disabled = action.open

    elif action.type == ActionType.TERMINALS_CONNECTION:
        sides = (1, 2) if action.side is None else (action.side,)
        for side in sides:
            setattr(branch, f"connected{side}", not action.open)
        if not action.open:
            branch.disabled = False

    else:
        pi = branch.pi_model
        if not pi.has_taps:
            raise ParameterError(f"Action '{action.id}': branch '{branch.id}' has no tap changer")
        position = pi.tap_position + action.tap_position if action.relative else action.tap_position
        try:
            pi.set_tap_position(position)
        except ValueError as e:
            raise ParameterError(f"Action '{action.id}': {e}") from e
        # The operator takes over the regulation
        branch.phase_control_mode = PhaseControlMode.FIXED_TAP

    logger.debug("Action '%s' applied on '%s'", action.id, branch.id)
    return True
