#!/usr/bin/env python3
"""
Project Storage for saved networks.

The core treats a project as an opaque document; this module only moves it
to and from JSON files in the projects directory.

Project Format (v1):
    {
        "id": "project_id",
        "version": 1,
        "saved_at": "2026-01-01T12:00:00",
        "features": {"type": "FeatureCollection", "features": [...]},
        "settings": {...},
        "patterns": [...], "curves": [...], "controls": [...]
    }
"""

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Any

from .config import PROJECTS_DIR, PROJECT_VERSION
from .exceptions import NotFound

logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r'[^A-Za-z0-9_.-]+')


@dataclass(frozen=True)
class Ack:
    """Acknowledgement of a successful save."""
    project_id: str
    path: Path
    saved_at: str


def project_path(project_id: str, projects_dir: Optional[Path] = None) -> Path:
    if not project_id or not project_id.strip():
        raise ValueError("Project id must not be empty")
    filename = _SAFE_ID.sub('_', project_id.strip()).lower()
    return (projects_dir or PROJECTS_DIR) / f"{filename}.json"


def save_project(
    project_id: str,
    data: Dict[str, Any],
    projects_dir: Optional[Path] = None
) -> Ack:
    """Write a project document, replacing any previous save of the same id.

    Args:
        project_id: Project identifier
        data: Document with at least 'features' and 'settings'
        projects_dir: Directory to save into (default: projects/)

    Returns:
        Ack with the file written
    """
    path = project_path(project_id, projects_dir)
    path.parent.mkdir(parents=True, exist_ok=True)

    saved_at = datetime.now().isoformat()
    document = {
        **data,
        'id': project_id,
        'version': PROJECT_VERSION,
        'saved_at': saved_at,
    }
    with open(path, 'w') as f:
        json.dump(document, f, indent=2)

    logger.info(f"Saved project '{project_id}' to {path}")
    return Ack(project_id=project_id, path=path, saved_at=saved_at)


def load_project(project_id: str, projects_dir: Optional[Path] = None) -> Dict[str, Any]:
    """Read a project document.

    Raises:
        NotFound: If no project with this id has been saved
        ValueError: If the file is not a valid project document
    """
    path = project_path(project_id, projects_dir)
    if not path.exists():
        raise NotFound(project_id)

    with open(path) as f:
        data = json.load(f)

    if 'features' not in data:
        raise ValueError(f"Project file {path} has no 'features'")
    data.setdefault('settings', {})

    version = data.get('version', 1)
    if version > PROJECT_VERSION:
        logger.warning(f"Project {project_id} was saved by a newer version (v{version})")
    return data


def list_projects(projects_dir: Optional[Path] = None) -> List[Dict[str, Any]]:
    """Summaries of all saved projects, most recently saved first."""
    directory = projects_dir or PROJECTS_DIR
    if not directory.exists():
        return []

    projects = []
    for path in directory.glob("*.json"):
        try:
            with open(path) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to read project {path}: {e}")
            continue
        projects.append({
            'id': data.get('id', path.stem),
            'title': data.get('settings', {}).get('title'),
            'saved_at': data.get('saved_at'),
            'n_features': len(data.get('features', {}).get('features', [])),
            'path': path,
        })

    projects.sort(key=lambda p: p['saved_at'] or '', reverse=True)
    return projects


def delete_project(project_id: str, projects_dir: Optional[Path] = None) -> None:
    path = project_path(project_id, projects_dir)
    if not path.exists():
        raise NotFound(project_id)
    path.unlink()
    logger.info(f"Deleted project '{project_id}'")
