"""Per-call radial network arena.

Builds keyed node/cable/type maps and the source-rooted tree from a frozen
:class:`Project`. Devices and solvers refer to nodes by id only; nothing in
here is mutated after construction, so one model can be reused for every
solver evaluation of a single calculation and then discarded.
"""

from __future__ import annotations

import logging
import math
from collections import deque
from dataclasses import dataclass, field
from typing import Iterable

from feederflow.config import Settings, settings as default_settings
from feederflow.engine.network.phase_distribution import assign_missing_phases
from feederflow.exceptions import TopologyError
from feederflow.schemas.equipment import CableUpgrade
from feederflow.schemas.network import (
    Cable,
    CableType,
    ClientRecord,
    NetworkNode,
    Phase,
    Project,
)

logger = logging.getLogger(__name__)


@dataclass
class CableSegment:
    """A cable oriented from the source side (parent) to the load side (child)."""
    cable_id: str
    parent_id: str
    child_id: str
    length_km: float
    z_phase_ohm: complex
    z_neutral_ohm: complex


@dataclass
class NetworkModel:
    """Radial feeder with keyed lookups, rooted at the source node."""
    project: Project
    source_id: str
    source_voltage_v: float
    source_impedance_ohm: complex
    nominal_voltage_v: float
    nodes: dict[str, NetworkNode] = field(default_factory=dict)
    cables: dict[str, Cable] = field(default_factory=dict)
    cable_types: dict[str, CableType] = field(default_factory=dict)
    # Breadth-first order from the source; parents precede children
    order: list[str] = field(default_factory=list)
    upstream: dict[str, CableSegment] = field(default_factory=dict)
    children: dict[str, list[CableSegment]] = field(default_factory=dict)
    unreachable: list[str] = field(default_factory=list)
    node_clients: dict[str, list[ClientRecord]] = field(default_factory=dict)
    client_phases: dict[str, Phase] = field(default_factory=dict)

    @classmethod
    def from_project(
        cls,
        project: Project,
        cable_upgrades: Iterable[CableUpgrade] = (),
        settings: Settings | None = None,
    ) -> NetworkModel:
        """Build the arena, applying cable type substitutions first.

        Raises:
            TopologyError: a cable upgrade references an unknown cable or
                type, or the cables form a loop.
        """
        cfg = settings or default_settings
        cable_types = {t.id: t for t in project.cable_types}
        cables = {c.id: c for c in project.cables}

        for upgrade in cable_upgrades:
            if upgrade.cable_id not in cables:
                raise TopologyError(f"upgrade references unknown cable {upgrade.cable_id}")
            if upgrade.new_type_id not in cable_types:
                raise TopologyError(f"upgrade references unknown cable type {upgrade.new_type_id}")
            cables[upgrade.cable_id] = cables[upgrade.cable_id].model_copy(
                update={"type_id": upgrade.new_type_id}
            )

        source = project.source
        target = source.target_voltage_v or cfg.nominal_phase_voltage_v
        if target > cfg.line_voltage_threshold_v:
            target = target / math.sqrt(3)

        z_source = project.transformer.source_impedance_ohm() if project.transformer else 0j

        model = cls(
            project=project,
            source_id=source.id,
            source_voltage_v=target,
            source_impedance_ohm=z_source,
            nominal_voltage_v=cfg.nominal_phase_voltage_v,
            nodes={n.id: n for n in project.nodes},
            cables=cables,
            cable_types=cable_types,
        )
        model._build_tree()

        clients = {c.id: c for c in project.clients}
        model.client_phases = assign_missing_phases(project.clients)
        for link in project.client_links:
            model.node_clients.setdefault(link.node_id, []).append(clients[link.client_id])
        return model

    def _build_tree(self) -> None:
        adjacency: dict[str, list[Cable]] = {node_id: [] for node_id in self.nodes}
        for cable in self.cables.values():
            adjacency[cable.node_a_id].append(cable)
            adjacency[cable.node_b_id].append(cable)

        visited = {self.source_id}
        used: set[str] = set()
        queue = deque([self.source_id])
        self.children = {node_id: [] for node_id in self.nodes}

        while queue:
            node_id = queue.popleft()
            self.order.append(node_id)
            for cable in adjacency[node_id]:
                if cable.id in used:
                    continue
                used.add(cable.id)
                other = cable.node_b_id if cable.node_a_id == node_id else cable.node_a_id
                if other in visited:
                    raise TopologyError(f"cable {cable.id} closes a loop at node {other}")
                visited.add(other)

                ctype = self.cable_types[cable.type_id]
                length_km = cable.length_m / 1000.0
                segment = CableSegment(
                    cable_id=cable.id,
                    parent_id=node_id,
                    child_id=other,
                    length_km=length_km,
                    z_phase_ohm=complex(ctype.r_phase_ohm_per_km, ctype.x_phase_ohm_per_km) * length_km,
                    z_neutral_ohm=complex(ctype.r_neutral_ohm_per_km, ctype.x_neutral_ohm_per_km) * length_km,
                )
                self.upstream[other] = segment
                self.children[node_id].append(segment)
                queue.append(other)

        self.unreachable = [n for n in self.nodes if n not in visited]
        if self.unreachable:
            logger.warning("Nodes not connected to the source: %s", ", ".join(self.unreachable))

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def has_node(self, node_id: str) -> bool:
        return node_id in self.nodes

    def is_reachable(self, node_id: str) -> bool:
        return node_id == self.source_id or node_id in self.upstream

    def path_from_source(self, node_id: str) -> list[CableSegment]:
        """Cable segments from the source down to ``node_id``."""
        path: list[CableSegment] = []
        current = node_id
        while current in self.upstream:
            segment = self.upstream[current]
            path.append(segment)
            current = segment.parent_id
        path.reverse()
        return path

    def upstream_nodes(self, node_id: str) -> list[str]:
        """Nodes strictly between the source (included) and ``node_id``."""
        return [segment.parent_id for segment in self.path_from_source(node_id)]

    def subtree(self, node_id: str) -> list[str]:
        """``node_id`` and every node fed through it."""
        result = [node_id]
        stack = [node_id]
        while stack:
            current = stack.pop()
            for segment in self.children.get(current, []):
                result.append(segment.child_id)
                stack.append(segment.child_id)
        return result

    def path_impedance(self, node_id: str) -> tuple[float, float]:
        """Resistive phase and neutral impedance from the source to a node (Ω)."""
        zph = self.source_impedance_ohm.real
        zn = 0.0
        for segment in self.path_from_source(node_id):
            zph += segment.z_phase_ohm.real
            zn += segment.z_neutral_ohm.real
        return zph, zn

    def clients_at(self, node_id: str) -> list[ClientRecord]:
        return self.node_clients.get(node_id, [])
