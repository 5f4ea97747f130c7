"""
Tests for saving, loading and listing projects.
"""

import json

import pytest

from hydronet.core.config import PROJECT_VERSION
from hydronet.core.exceptions import NotFound
from hydronet.core.network_io import from_project_data, to_project_data
from hydronet.core.project_storage import (
    delete_project,
    list_projects,
    load_project,
    project_path,
    save_project,
)
from hydronet.core.serializer import serialize


def test_save_and_load(fed_network, tmp_path):
    fed_network.store.update_settings(title='Main street')
    ack = save_project('main-street', to_project_data(fed_network.store), tmp_path)

    assert ack.path.exists()
    assert ack.path.parent == tmp_path

    data = load_project('main-street', tmp_path)
    assert data['id'] == 'main-street'
    assert data['version'] == PROJECT_VERSION
    assert data['saved_at'] == ack.saved_at

    restored = from_project_data(data)
    assert restored.settings.title == 'Main street'
    assert serialize(restored) == serialize(fed_network.store)


def test_save_overwrites(tmp_path):
    save_project('p', {'features': {'type': 'FeatureCollection', 'features': []}}, tmp_path)
    save_project('p', {'features': {'type': 'FeatureCollection', 'features': []},
                       'settings': {'title': 'second'}}, tmp_path)
    assert len(list(tmp_path.glob('*.json'))) == 1
    assert load_project('p', tmp_path)['settings']['title'] == 'second'


def test_missing_project(tmp_path):
    with pytest.raises(NotFound):
        load_project('nope', tmp_path)
    with pytest.raises(NotFound):
        delete_project('nope', tmp_path)


def test_empty_id_rejected(tmp_path):
    with pytest.raises(ValueError):
        project_path('  ', tmp_path)


def test_ids_are_sanitized(tmp_path):
    path = project_path('../My Project', tmp_path)
    assert path.parent == tmp_path
    assert path.name == '.._my_project.json'


def test_document_without_features_rejected(tmp_path):
    (tmp_path / 'broken.json').write_text(json.dumps({'settings': {}}))
    with pytest.raises(ValueError):
        load_project('broken', tmp_path)


def test_list_newest_first(tmp_path):
    for name, saved_at in [('a', '2026-01-01T00:00:00'), ('b', '2026-03-01T00:00:00')]:
        (tmp_path / f'{name}.json').write_text(json.dumps({
            'id': name, 'saved_at': saved_at,
            'settings': {'title': name.upper()},
            'features': {'type': 'FeatureCollection', 'features': [{}, {}]},
        }))
    (tmp_path / 'garbage.json').write_text('{not json')

    projects = list_projects(tmp_path)
    assert [p['id'] for p in projects] == ['b', 'a']
    assert projects[0]['title'] == 'B'
    assert projects[0]['n_features'] == 2


def test_list_missing_directory(tmp_path):
    assert list_projects(tmp_path / 'none') == []


def test_delete(tmp_path):
    save_project('gone', {'features': {'type': 'FeatureCollection', 'features': []}}, tmp_path)
    delete_project('gone', tmp_path)
    assert list_projects(tmp_path) == []
