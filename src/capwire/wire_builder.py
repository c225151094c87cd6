"""Turning a consistent permutation into wires.

Only resources that are not resolved yet receive wires; wires are always
expressed in terms of declared resources, requirements and capabilities,
never the wrapped views used while resolving.
"""

from collections import deque

from capwire.domain import Wire
from capwire.fragments import WrappedResource, is_payload
from capwire.namespaces import HOST_NAMESPACE, IDENTITY_NAMESPACE, strategy_for

__all__ = ["populate_wire_map", "populate_dynamic_wire_map", "subtract_existing_wires"]


def populate_wire_map(wirings, root, wire_map: dict, candidates) -> dict:
    """Add wires for ``root`` and every unresolved resource it is wired to.

    Args:
        wirings: Existing wirings, keyed by resource.
        root: The resource to wire, possibly a wrapped host.
        wire_map: Wires built so far, keyed by declared requirer; updated in place.
        candidates: The consistent permutation.

    Returns:
        ``wire_map``.
    """
    to_wire = deque([root])
    while to_wire:
        resource = to_wire.popleft()
        declared = resource.declared_resource
        if declared in wirings or declared in wire_map:
            continue
        wire_map[declared] = []

        wires = []
        for requirement in resource.requirements:
            for capability in candidates.get_candidates(requirement) or ():
                if not (
                    strategy_for(capability.namespace).suppress_self_wires
                    and capability.resource is resource
                ):
                    to_wire.append(capability.resource)
                    if requirement.namespace == IDENTITY_NAMESPACE:
                        provider = capability.declared_capability.resource
                    else:
                        provider = capability.resource.declared_resource
                    wires.append(
                        Wire(
                            declared,
                            requirement.declared_requirement,
                            provider,
                            capability.declared_capability,
                        )
                    )
                if not requirement.is_multiple:
                    break
        wires.sort(key=lambda w: strategy_for(w.requirement.namespace).wire_order)
        wire_map[declared] = wires

        if isinstance(resource, WrappedResource):
            _add_fragment_wires(wirings, resource, wire_map, candidates)
    return wire_map


def _add_fragment_wires(wirings, wrapped: WrappedResource, wire_map: dict, candidates):
    host = wrapped.declared_resource
    host_capability = host.get_capabilities(HOST_NAMESPACE)[0]
    for fragment in wrapped.fragments:
        first_seen = fragment not in wirings and fragment not in wire_map
        fragment_wires = wire_map.get(fragment, [])
        for requirement in fragment.requirements:
            if is_payload(requirement):
                continue
            if requirement.namespace == HOST_NAMESPACE:
                fragment_wires.append(Wire(fragment, requirement, host, host_capability))
            elif first_seen:
                capability = candidates.first_candidate(requirement)
                if capability is not None:
                    fragment_wires.append(
                        Wire(
                            fragment,
                            requirement,
                            capability.resource.declared_resource,
                            capability.declared_capability,
                        )
                    )
        wire_map[fragment] = fragment_wires


def populate_dynamic_wire_map(wirings, host, requirement, wire_map: dict, candidates) -> dict:
    """Add the single wire for a dynamic requirement, plus wires for its provider."""
    wire_map[host] = []
    capability = candidates.first_candidate(requirement)
    if capability.resource.declared_resource not in wirings:
        populate_wire_map(wirings, capability.resource, wire_map, candidates)
    wire_map[host] = [
        Wire(
            host,
            requirement,
            capability.resource.declared_resource,
            capability.declared_capability,
        )
    ]
    return wire_map


def subtract_existing_wires(wirings, wire_map: dict) -> dict:
    """Drop wires, and resources left without new wires, that ``wirings`` already holds."""
    delta = {}
    for resource, wires in wire_map.items():
        wiring = wirings.get(resource)
        if wiring is None:
            delta[resource] = wires
            continue
        existing = set(wiring.required_resource_wires())
        new_wires = [w for w in wires if w not in existing]
        if new_wires:
            delta[resource] = new_wires
    return delta
