"""Network post-processors.

Post-processors are notified while a network is built, once per created
element, and may enrich the model (typically its ``properties`` bags).
ALWAYS post-processors run on every build; SELECTION ones only when their
name is listed in ``LoadFlowParameters.post_processors``.
"""

from __future__ import annotations

from abc import ABC
from enum import Enum
from typing import TYPE_CHECKING, Any, Iterable

from gridsens.core.errors import ParameterError

if TYPE_CHECKING:
    from gridsens.network.elements import Branch, Bus
    from gridsens.network.network_model import Network
    from gridsens.parameters import LoadFlowParameters


class LoadingPolicy(str, Enum):
    ALWAYS = "always"
    SELECTION = "selection"


class NetworkPostProcessor(ABC):
    """Hooks called by the network builder. Every hook defaults to a no-op."""

    name: str = ""
    loading_policy: LoadingPolicy = LoadingPolicy.SELECTION

    def on_bus_added(self, source: Any, bus: Bus) -> None:
        pass

    def on_branch_added(self, source: Any, branch: Branch) -> None:
        pass

    def on_injection_added(self, source: Any, injection: Any) -> None:
        pass

    def on_network_created(self, network: Network) -> None:
        pass


class PropertiesPostProcessor(NetworkPostProcessor):
    """Copy the ``properties`` of source elements into the calculation elements."""

    name = "properties"
    loading_policy = LoadingPolicy.SELECTION

    def _copy(self, source: Any, element: Any) -> None:
        properties = getattr(source, "properties", None)
        if properties:
            element.properties.update(properties)

    def on_branch_added(self, source: Any, branch: Branch) -> None:
        self._copy(source, branch)

    def on_injection_added(self, source: Any, injection: Any) -> None:
        self._copy(source, injection)


class ComponentNumberPostProcessor(NetworkPostProcessor):
    """Record component numbers in the bus property bags."""

    name = "component_numbers"
    loading_policy = LoadingPolicy.ALWAYS

    def on_network_created(self, network: Network) -> None:
        for bus in network.buses:
            bus.properties["num_cc"] = network.num_cc
            bus.properties["num_sc"] = network.num_sc


# Static registry of available post-processors
POST_PROCESSORS: list[NetworkPostProcessor] = [
    PropertiesPostProcessor(),
    ComponentNumberPostProcessor(),
]


def find_post_processors(
    parameters: LoadFlowParameters,
    available: Iterable[NetworkPostProcessor] | None = None,
) -> list[NetworkPostProcessor]:
    """Post-processors active for ``parameters``.

    Raises:
        ParameterError: a selected name matches no available post-processor.
    """
    available = list(POST_PROCESSORS if available is None else available)
    names = {p.name for p in available}
    unknown = [n for n in parameters.post_processors if n not in names]
    if unknown:
        raise ParameterError(f"Unknown network post-processor '{unknown[0]}'")
    return [
        p for p in available
        if p.loading_policy == LoadingPolicy.ALWAYS or p.name in parameters.post_processors
    ]
