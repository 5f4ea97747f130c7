"""
Network import and export.

- INP import: parsed with WNTR into a WaterNetworkModel, then mapped into a
  GraphStore in the file's own flow units (WNTR works in SI internally).
- GeoJSON: a FeatureCollection with one Point per node and one LineString
  per link. Output is sorted by id so the same network always gives the
  same document.
- Project data: the feature collection plus settings, patterns, curves and
  controls, as stored by project_storage.
"""
import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import wntr
from wntr.epanet.util import FlowUnits, HydParam, from_si

from .graph_store import GraphStore
from .models import (
    NetworkControl,
    NetworkLink,
    NetworkNode,
    ProjectSettings,
    PumpCurve,
    TimePattern,
    geometry_length,
)
from .topology import TopologyManager

logger = logging.getLogger(__name__)

_TIMER_CONTROL = re.compile(
    r'^LINK\s+(\S+)\s+(OPEN|CLOSED)\s+AT\s+TIME\s+(\S+)', re.IGNORECASE)
_LEVEL_CONTROL = re.compile(
    r'^LINK\s+(\S+)\s+(OPEN|CLOSED)\s+IF\s+NODE\s+(\S+)\s+(BELOW|ABOVE)\s+(\S+)', re.IGNORECASE)


# =============================================================================
# INP import
# =============================================================================

def _target_store(store: Optional[GraphStore], manager: Optional[TopologyManager]) -> GraphStore:
    if manager is not None:
        if store is not None and store is not manager.store:
            raise ValueError("store and manager.store must be the same GraphStore")
        return manager.store
    return store if store is not None else GraphStore()


def _finish_load(store: GraphStore, manager: Optional[TopologyManager]) -> None:
    manager = manager if manager is not None else TopologyManager(store)
    manager.rebuild_connectivity()
    manager.adopt_existing_ids()


def _status_name(status) -> str:
    name = str(getattr(status, 'name', status)).lower()
    return 'open' if name == 'active' else name


def _hours_to_seconds(text: str) -> float:
    if ':' in text:
        parts = [float(p) for p in text.split(':')]
        while len(parts) < 3:
            parts.append(0.0)
        return parts[0] * 3600 + parts[1] * 60 + parts[2]
    return float(text) * 3600


def parse_controls(inp_text: str) -> List[NetworkControl]:
    """Read simple TIMER / level controls from the [CONTROLS] section."""
    controls: List[NetworkControl] = []
    in_section = False
    for raw in inp_text.splitlines():
        line = raw.split(';', 1)[0].strip()
        if line.startswith('['):
            in_section = line.upper() == '[CONTROLS]'
            continue
        if not in_section or not line:
            continue

        match = _TIMER_CONTROL.match(line)
        if match:
            link_id, status, when = match.groups()
            controls.append(NetworkControl(link_id, status.upper(), 'TIMER', _hours_to_seconds(when)))
            continue
        match = _LEVEL_CONTROL.match(line)
        if match:
            link_id, status, node_id, direction, value = match.groups()
            control_type = 'LOW LEVEL' if direction.upper() == 'BELOW' else 'HI LEVEL'
            controls.append(NetworkControl(link_id, status.upper(), control_type, float(value), node_id))
            continue
        logger.warning(f"Skipping unsupported control: {line}")
    return controls


def load_inp(
    path: Union[str, Path],
    store: Optional[GraphStore] = None,
    manager: Optional[TopologyManager] = None
) -> GraphStore:
    """Populate a GraphStore from an EPANET INP file.

    Existing content of `store` is cleared. Connectivity is rebuilt from
    link endpoints after all entities are in place. Pass the `manager` that
    already owns the store so it registers the loaded ids.
    """
    path = Path(path)
    wn = wntr.network.WaterNetworkModel(str(path))
    store = _target_store(store, manager)
    store.clear()

    hyd = wn.options.hydraulic
    units = FlowUnits[hyd.inpfile_units]
    darcy = hyd.headloss == 'D-W'

    title = getattr(wn, 'title', None)
    if isinstance(title, (list, tuple)):
        title = ' '.join(t for t in title if t)
    store.settings = ProjectSettings(
        title=title or path.stem,
        units=hyd.inpfile_units,
        headloss=hyd.headloss,
        specific_gravity=hyd.specific_gravity,
        viscosity=hyd.viscosity,
        trials=hyd.trials,
        accuracy=hyd.accuracy,
        demand_multiplier=hyd.demand_multiplier,
        duration=int(wn.options.time.duration),
        hydraulic_timestep=int(wn.options.time.hydraulic_timestep),
        pattern_timestep=int(wn.options.time.pattern_timestep),
    )

    store.patterns = {
        name: TimePattern(name, [float(m) for m in pattern.multipliers])
        for name, pattern in wn.patterns()
    }
    for name, curve in wn.curves():
        if curve.curve_type == 'HEAD':
            points = [(from_si(units, x, HydParam.Flow), from_si(units, y, HydParam.HydraulicHead))
                      for x, y in curve.points]
            store.set_curve(PumpCurve(name, points, 'PUMP'))
        else:
            store.set_curve(PumpCurve(name, [tuple(p) for p in curve.points], curve.curve_type))

    with store.batch():
        for name, node in wn.nodes():
            store.upsert(_node_from_wntr(name, node, units))
        for name, link in wn.links():
            start = wn.get_node(link.start_node_name).coordinates
            end = wn.get_node(link.end_node_name).coordinates
            geometry = [tuple(start)] + [tuple(v) for v in link.vertices] + [tuple(end)]
            store.upsert(_link_from_wntr(name, link, geometry, units, darcy))

    store.controls = parse_controls(path.read_text(errors='replace'))

    _finish_load(store, manager)
    logger.info(f"Loaded {path.name}: {store.node_count} nodes, {len(store) - store.node_count} links")
    return store


def _node_from_wntr(name: str, node, units: FlowUnits) -> NetworkNode:
    kind = node.node_type
    position = tuple(node.coordinates)
    if kind == 'Junction':
        demands = node.demand_timeseries_list
        base = demands[0].base_value if len(demands) else 0.0
        pattern = demands[0].pattern_name if len(demands) else None
        return NetworkNode(
            id=name, node_type='junction', position=position,
            elevation=from_si(units, node.elevation, HydParam.Elevation),
            demand=from_si(units, base, HydParam.Demand),
            pattern=pattern,
        )
    elif kind == 'Reservoir':
        head = from_si(units, node.base_head, HydParam.HydraulicHead)
        return NetworkNode(
            id=name, node_type='reservoir', position=position,
            elevation=head, head=head, pattern=node.head_pattern_name,
        )
    elif kind == 'Tank':
        return NetworkNode(
            id=name, node_type='tank', position=position,
            elevation=from_si(units, node.elevation, HydParam.Elevation),
            init_level=from_si(units, node.init_level, HydParam.Length),
            min_level=from_si(units, node.min_level, HydParam.Length),
            max_level=from_si(units, node.max_level, HydParam.Length),
            diameter=from_si(units, node.diameter, HydParam.TankDiameter),
            min_volume=from_si(units, node.min_vol, HydParam.Volume),
        )
    raise ValueError(f"Unsupported node type in INP: {kind}")


def _link_from_wntr(name: str, link, geometry, units: FlowUnits, darcy: bool) -> NetworkLink:
    kind = link.link_type
    common = dict(
        id=name,
        start_node_id=link.start_node_name,
        end_node_id=link.end_node_name,
        geometry=geometry,
        status=_status_name(link.initial_status),
    )
    if kind == 'Pipe':
        if getattr(link, 'check_valve', False):
            common['status'] = 'cv'
        return NetworkLink(
            link_type='pipe',
            length=from_si(units, link.length, HydParam.Length),
            diameter=from_si(units, link.diameter, HydParam.PipeDiameter),
            roughness=from_si(units, link.roughness, HydParam.RoughnessCoeff, darcy_weisbach=darcy),
            minor_loss=link.minor_loss,
            **common,
        )
    elif kind == 'Pump':
        is_head = link.pump_type == 'HEAD'
        return NetworkLink(
            link_type='pump',
            curve_id=link.pump_curve_name if is_head else None,
            power=None if is_head else from_si(units, link.power, HydParam.Power),
            speed=float(link.base_speed),
            pattern=link.speed_pattern_name,
            length=geometry_length(geometry),
            **common,
        )
    elif kind == 'Valve':
        setting = link.initial_setting
        if link.valve_type in ('PRV', 'PSV', 'PBV'):
            setting = from_si(units, setting, HydParam.Pressure)
        elif link.valve_type == 'FCV':
            setting = from_si(units, setting, HydParam.Flow)
        return NetworkLink(
            link_type='valve',
            diameter=from_si(units, link.diameter, HydParam.PipeDiameter),
            valve_type=link.valve_type,
            setting=setting,
            minor_loss=link.minor_loss,
            length=geometry_length(geometry),
            **common,
        )
    raise ValueError(f"Unsupported link type in INP: {kind}")


# =============================================================================
# GeoJSON
# =============================================================================

def export_geojson(store: GraphStore) -> Dict[str, Any]:
    """FeatureCollection of every node and non-preview link, sorted by id."""
    features = []
    for node in sorted(store.nodes(), key=lambda n: n.id):
        properties = node.to_dict()
        position = properties.pop('position')
        features.append({
            'type': 'Feature',
            'id': node.id,
            'geometry': {'type': 'Point', 'coordinates': position},
            'properties': properties,
        })
    for link in sorted(store.links(), key=lambda l: l.id):
        if link.is_preview:
            continue
        properties = link.to_dict()
        coordinates = properties.pop('geometry')
        features.append({
            'type': 'Feature',
            'id': link.id,
            'geometry': {'type': 'LineString', 'coordinates': coordinates},
            'properties': properties,
        })
    return {'type': 'FeatureCollection', 'features': features}


def save_geojson(store: GraphStore, path: Union[str, Path]) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w') as f:
        json.dump(export_geojson(store), f, indent=2, sort_keys=True)
    logger.info(f"Saved GeoJSON to {path}")
    return path


def import_geojson(
    collection: Dict[str, Any],
    store: Optional[GraphStore] = None,
    manager: Optional[TopologyManager] = None
) -> GraphStore:
    """Load a FeatureCollection produced by `export_geojson` into a GraphStore.

    Entities are upserted next to whatever the store already holds. Pass the
    `manager` that already owns the store so it registers the loaded ids.

    Raises:
        ValueError: If a feature has a geometry other than Point or LineString
    """
    if collection.get('type') != 'FeatureCollection':
        raise ValueError("Expected a GeoJSON FeatureCollection")
    store = _target_store(store, manager)

    nodes, links = [], []
    for feature in collection.get('features', []):
        geometry = feature.get('geometry') or {}
        properties = dict(feature.get('properties') or {})
        properties.setdefault('id', feature.get('id'))
        if geometry.get('type') == 'Point':
            properties['position'] = geometry['coordinates']
            nodes.append(NetworkNode.from_dict(properties))
        elif geometry.get('type') == 'LineString':
            properties['geometry'] = geometry['coordinates']
            links.append(NetworkLink.from_dict(properties))
        else:
            raise ValueError(f"Unsupported geometry for feature {properties.get('id')}: {geometry.get('type')}")

    with store.batch():
        for entity in nodes + links:
            store.upsert(entity)

    _finish_load(store, manager)
    logger.info(f"Imported {len(nodes)} nodes and {len(links)} links from GeoJSON")
    return store


# =============================================================================
# Project data
# =============================================================================

def to_project_data(store: GraphStore) -> Dict[str, Any]:
    """External representation used by project persistence."""
    return {
        'features': export_geojson(store),
        'settings': store.settings.to_dict(),
        'patterns': [
            {'id': p.id, 'multipliers': list(p.multipliers), 'description': p.description}
            for p in store.patterns.values()
        ],
        'curves': [
            {'id': c.id, 'points': [list(pt) for pt in c.points],
             'curve_type': c.curve_type, 'description': c.description}
            for c in store.curves.values()
        ],
        'controls': [vars(c).copy() for c in store.controls],
    }


def from_project_data(
    data: Dict[str, Any],
    store: Optional[GraphStore] = None,
    manager: Optional[TopologyManager] = None
) -> GraphStore:
    """Replace the content of the store with a saved project document."""
    store = _target_store(store, manager)
    store.clear()
    store.settings = ProjectSettings.from_dict(data.get('settings', {}))
    if 'patterns' in data:
        store.patterns = {p['id']: TimePattern(**p) for p in data['patterns']}
    store.curves = {
        c['id']: PumpCurve(c['id'], [tuple(pt) for pt in c['points']],
                           c.get('curve_type', 'PUMP'), c.get('description', ''))
        for c in data.get('curves', [])
    }
    store.controls = [NetworkControl(**c) for c in data.get('controls', [])]
    features = data.get('features') or {'type': 'FeatureCollection', 'features': []}
    return import_geojson(features, store, manager)
