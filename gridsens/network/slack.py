"""Slack bus selection and active power distribution.

Selection ranks candidate buses (enabled, non-fictitious) according to the
configured mode and keeps up to ``max_slack_bus_count`` of them; the first
one is the angle reference.

Distribution spreads an active power mismatch over participating
generators or loads, iterating while some of them hit their active limits.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

from gridsens.network.elements import Generator, Load
from gridsens.network.network_model import Network
from gridsens.parameters import BalanceType, LoadFlowParameters, SlackBusSelectionMode

logger = logging.getLogger(__name__)

P_RESIDUE_EPS = 1e-5  # p.u.


# ----------------------------------------------------------------------
# Slack selection
# ----------------------------------------------------------------------

def _candidates(network: Network, bus_nums: Iterable[int] | None = None) -> list[int]:
    nums = range(len(network.buses)) if bus_nums is None else bus_nums
    return [n for n in nums if not network.buses[n].disabled and not network.buses[n].fictitious]


def _connected_branch_count(network: Network, bus_num: int) -> int:
    return sum(
        1 for n in network.buses[bus_num].branch_nums if network.is_branch_connected(network.branches[n])
    )


def rank_slack_candidates(
    network: Network,
    parameters: LoadFlowParameters,
    bus_nums: Iterable[int] | None = None,
) -> list[int]:
    """Candidate buses ordered from best to worst slack choice."""
    candidates = _candidates(network, bus_nums)
    if not candidates:
        return []
    mode = parameters.slack_bus_selection_mode
    by_id = lambda n: network.buses[n].id  # noqa: E731

    if mode == SlackBusSelectionMode.NAME:
        named = []
        for slack_id in parameters.slack_bus_ids:
            bus = network.find_bus(slack_id)
            if bus is not None and bus.num in candidates and bus.num not in named:
                named.append(bus.num)
        if named:
            return named
        logger.warning(
            "None of the slack buses %s is in network '%s', falling back to most meshed selection",
            list(parameters.slack_bus_ids), network.id,
        )
        mode = SlackBusSelectionMode.MOST_MESHED

    if mode == SlackBusSelectionMode.FIRST:
        return sorted(candidates)

    if mode == SlackBusSelectionMode.LARGEST_GENERATOR:
        def generation(n: int) -> float:
            return sum(
                g.max_p for g in (network.generators[k] for k in network.buses[n].generator_nums)
                if not g.disabled
            )
        return sorted(candidates, key=lambda n: (-generation(n), by_id(n)))

    # Most meshed among the highest nominal voltage buses
    max_v = max(network.buses[n].nominal_v for n in candidates)
    return sorted(
        candidates,
        key=lambda n: (
            network.buses[n].nominal_v < max_v,
            -_connected_branch_count(network, n),
            by_id(n),
        ),
    )


def select_slack_buses(
    network: Network,
    parameters: LoadFlowParameters,
    bus_nums: Iterable[int] | None = None,
) -> list[int]:
    """Choose and assign slack buses among ``bus_nums`` (all buses by default)."""
    ranked = rank_slack_candidates(network, parameters, bus_nums)
    if not ranked:
        # Only fictitious buses left, accept them
        ranked = [n for n in (bus_nums if bus_nums is not None else range(len(network.buses)))
                  if not network.buses[n].disabled]
    slack_nums = ranked[: parameters.max_slack_bus_count]
    network.set_slack_buses(slack_nums)
    if slack_nums:
        logger.debug(
            "Network '%s' slack buses: %s",
            network.id, [network.buses[n].id for n in slack_nums],
        )
    return slack_nums


# ----------------------------------------------------------------------
# Active power distribution
# ----------------------------------------------------------------------

@dataclass
class DistributionResult:
    mismatch: float
    distributed: float
    remaining: float
    iterations: int

    @property
    def success(self) -> bool:
        return abs(self.remaining) <= P_RESIDUE_EPS


def _generator_factor(gen: Generator, balance_type: BalanceType) -> float:
    if balance_type == BalanceType.PROPORTIONAL_TO_GENERATION_P_MAX:
        return gen.max_p
    if balance_type == BalanceType.PROPORTIONAL_TO_GENERATION_P:
        return gen.target_p
    if balance_type == BalanceType.PROPORTIONAL_TO_GENERATION_PARTICIPATION_FACTOR:
        return gen.participation_factor
    return gen.max_p - gen.target_p


def participating_elements(
    network: Network,
    balance_type: BalanceType,
    countries: Iterable[str] = (),
    bus_nums: set[int] | None = None,
) -> list[tuple[Generator | Load, float]]:
    """Elements taking part in the distribution with their raw factors (> 0)."""
    countries = set(countries)

    def bus_ok(bus_num: int) -> bool:
        bus = network.buses[bus_num]
        if bus.disabled or (bus_nums is not None and bus_num not in bus_nums):
            return False
        return not countries or bus.country in countries

    elements: list[tuple[Generator | Load, float]] = []
    if balance_type == BalanceType.PROPORTIONAL_TO_LOAD:
        for load in network.loads:
            if not load.disabled and load.participating and bus_ok(load.bus_num):
                factor = abs(load.target_p)
                if factor > 0:
                    elements.append((load, factor))
        return elements
    for gen in network.generators:
        if gen.disabled or not gen.participating or gen.converter or not bus_ok(gen.bus_num):
            continue
        factor = _generator_factor(gen, balance_type)
        if factor > 0:
            elements.append((gen, factor))
    return elements


def participation_vector(
    network: Network,
    balance_type: BalanceType,
    countries: Iterable[str] = (),
    bus_nums: set[int] | None = None,
) -> dict[int, float]:
    """Normalized participation per bus num (sums to 1, empty if nothing participates)."""
    elements = participating_elements(network, balance_type, countries, bus_nums)
    total = sum(f for _, f in elements)
    if total <= 0:
        return {}
    by_bus: dict[int, float] = {}
    for element, factor in elements:
        by_bus[element.bus_num] = by_bus.get(element.bus_num, 0.0) + factor / total
    return by_bus


def distribute_active_power(
    network: Network,
    mismatch: float,
    balance_type: BalanceType,
    countries: Iterable[str] = (),
    bus_nums: set[int] | None = None,
) -> DistributionResult:
    """Spread ``mismatch`` (p.u., positive = more generation needed).

    Generators move within [min_p, max_p]; loads absorb the opposite amount
    without limits. Elements reaching a limit leave the next iteration.
    """
    elements = participating_elements(network, balance_type, countries, bus_nums)
    remaining = mismatch
    iterations = 0
    while abs(remaining) > P_RESIDUE_EPS and elements:
        iterations += 1
        total = sum(f for _, f in elements)
        done = 0.0
        still_free: list[tuple[Generator | Load, float]] = []
        for element, factor in elements:
            delta = remaining * factor / total
            if isinstance(element, Load):
                element.target_p -= delta
                done += delta
                still_free.append((element, factor))
                continue
            new_p = element.target_p + delta
            if remaining > 0 and new_p >= element.max_p:
                new_p = element.max_p
            elif remaining < 0 and new_p <= element.min_p:
                new_p = element.min_p
            else:
                still_free.append((element, factor))
            done += new_p - element.target_p
            element.target_p = new_p
        remaining -= done
        elements = still_free

    if abs(remaining) > P_RESIDUE_EPS:
        logger.warning(
            "Failed to distribute slack bus active power mismatch, %.3f MW remains",
            remaining * network.base_power,
        )
    return DistributionResult(
        mismatch=mismatch, distributed=mismatch - remaining, remaining=remaining, iterations=iterations
    )
