"""
Network Serializer: GraphStore -> EPANET input (INP) text.

Output is deterministic for the same graph content: entities are written
sorted by id and numbers are formatted without locale or float noise.
Patterns, curves and controls are written exactly as stored.
"""
import logging
from typing import List

import numpy as np

from .exceptions import EmptyNetworkError
from .graph_store import GraphStore
from .models import NetworkLink, NetworkNode

logger = logging.getLogger(__name__)

PATTERN_VALUES_PER_LINE = 6

_PIPE_STATUS = {'open': 'Open', 'closed': 'Closed', 'cv': 'CV'}


def _num(value) -> str:
    return np.format_float_positional(float(value), trim='-')


def _clock(seconds: int) -> str:
    seconds = int(seconds)
    return f"{seconds // 3600}:{(seconds % 3600) // 60:02d}"


def _row(*cols) -> str:
    first, *rest = [str(c) for c in cols]
    return " " + "\t".join([f"{first:<16}"] + [f"{c:<12}" for c in rest])


def serialize(graph: GraphStore) -> str:
    """Render the graph as EPANET INP text.

    Raises:
        EmptyNetworkError: If the graph has no nodes
    """
    nodes = sorted(graph.nodes(), key=lambda n: n.id)
    if not nodes:
        raise EmptyNetworkError()
    links = sorted((l for l in graph.links() if not l.is_preview), key=lambda l: l.id)
    settings = graph.settings

    lines: List[str] = ["[TITLE]", settings.title, ""]

    junctions = [n for n in nodes if n.node_type == 'junction']
    reservoirs = [n for n in nodes if n.node_type == 'reservoir']
    tanks = [n for n in nodes if n.node_type == 'tank']

    lines += ["[JUNCTIONS]", ";ID\tElev\tDemand\tPattern"]
    lines += [_node_row(n) for n in junctions]
    lines += ["", "[RESERVOIRS]", ";ID\tHead\tPattern"]
    lines += [_node_row(n) for n in reservoirs]
    lines += ["", "[TANKS]", ";ID\tElevation\tInitLevel\tMinLevel\tMaxLevel\tDiameter\tMinVol\tVolCurve"]
    lines += [_node_row(n) for n in tanks]

    pipes = [l for l in links if l.link_type == 'pipe']
    pumps = [l for l in links if l.link_type == 'pump']
    valves = [l for l in links if l.link_type == 'valve']

    lines += ["", "[PIPES]", ";ID\tNode1\tNode2\tLength\tDiameter\tRoughness\tMinorLoss\tStatus"]
    lines += [_link_row(l) for l in pipes]
    lines += ["", "[PUMPS]", ";ID\tNode1\tNode2\tParameters"]
    lines += [_link_row(l) for l in pumps]
    lines += ["", "[VALVES]", ";ID\tNode1\tNode2\tDiameter\tType\tSetting\tMinorLoss"]
    lines += [_link_row(l) for l in valves]

    closed = [l for l in pumps + valves if l.status.lower() == 'closed']
    lines += ["", "[STATUS]", ";ID\tStatus/Setting"]
    lines += [_row(l.id, 'Closed') for l in closed]

    lines += ["", "[PATTERNS]", ";ID\tMultipliers"]
    for pattern_id in sorted(graph.patterns):
        pattern = graph.patterns[pattern_id]
        if pattern.description:
            lines.append(f";{pattern.description}")
        values = pattern.multipliers
        for i in range(0, len(values), PATTERN_VALUES_PER_LINE):
            chunk = values[i:i + PATTERN_VALUES_PER_LINE]
            lines.append(_row(pattern_id, *[_num(v) for v in chunk]))

    lines += ["", "[CURVES]", ";ID\tX-Value\tY-Value"]
    for curve_id in sorted(graph.curves):
        curve = graph.curves[curve_id]
        lines.append(f";{curve.curve_type}: {curve.description}".rstrip())
        lines += [_row(curve_id, _num(x), _num(y)) for x, y in curve.points]

    lines += ["", "[CONTROLS]"]
    lines += [control.to_inp_line() for control in graph.controls]

    lines += [
        "", "[TIMES]",
        f" Duration           \t{_clock(settings.duration)}",
        f" Hydraulic Timestep \t{_clock(settings.hydraulic_timestep)}",
        f" Pattern Timestep   \t{_clock(settings.pattern_timestep)}",
        f" Report Timestep    \t{_clock(settings.hydraulic_timestep)}",
        "",
        "[OPTIONS]",
        f" Units              \t{settings.units}",
        f" Headloss           \t{settings.headloss}",
        f" Specific Gravity   \t{_num(settings.specific_gravity)}",
        f" Viscosity          \t{_num(settings.viscosity)}",
        f" Trials             \t{int(settings.trials)}",
        f" Accuracy           \t{_num(settings.accuracy)}",
        f" Demand Multiplier  \t{_num(settings.demand_multiplier)}",
    ]

    lines += ["", "[COORDINATES]", ";Node\tX-Coord\tY-Coord"]
    lines += [_row(n.id, _num(n.position[0]), _num(n.position[1])) for n in nodes]

    lines += ["", "[VERTICES]", ";Link\tX-Coord\tY-Coord"]
    for link in links:
        for x, y in link.geometry[1:-1]:
            lines.append(_row(link.id, _num(x), _num(y)))

    lines += ["", "[END]", ""]
    logger.debug(f"Serialized {len(nodes)} nodes and {len(links)} links")
    return "\n".join(lines)


def _node_row(node: NetworkNode) -> str:
    if node.node_type == 'junction':
        return _row(node.id, _num(node.elevation), _num(node.demand or 0.0), node.pattern or '')
    elif node.node_type == 'reservoir':
        head = node.head if node.head is not None else node.elevation
        return _row(node.id, _num(head), node.pattern or '')
    elif node.node_type == 'tank':
        return _row(
            node.id,
            _num(node.elevation),
            _num(node.init_level or 0.0),
            _num(node.min_level or 0.0),
            _num(node.max_level or 0.0),
            _num(node.diameter or 0.0),
            _num(node.min_volume or 0.0),
        )
    raise ValueError(f"Unknown node type: {node.node_type!r}")


def _link_row(link: NetworkLink) -> str:
    if link.link_type == 'pipe':
        return _row(
            link.id, link.start_node_id, link.end_node_id,
            _num(link.length or 0.0),
            _num(link.diameter or 0.0),
            _num(link.roughness or 0.0),
            _num(link.minor_loss or 0.0),
            _PIPE_STATUS.get(link.status.lower(), 'Open'),
        )
    elif link.link_type == 'pump':
        params = [f"HEAD {link.curve_id}"] if link.curve_id else [f"POWER {_num(link.power or 0.0)}"]
        if link.speed != 1.0:
            params.append(f"SPEED {_num(link.speed)}")
        if link.pattern:
            params.append(f"PATTERN {link.pattern}")
        return _row(link.id, link.start_node_id, link.end_node_id, " ".join(params))
    elif link.link_type == 'valve':
        return _row(
            link.id, link.start_node_id, link.end_node_id,
            _num(link.diameter or 0.0),
            (link.valve_type or 'TCV').upper(),
            _num(link.setting or 0.0),
            _num(link.minor_loss or 0.0),
        )
    raise ValueError(f"Unknown link type: {link.link_type!r}")
