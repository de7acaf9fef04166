from datetime import datetime, timedelta, timezone

import pytest

import app as app_module
from app import BROADCASTER, Check, db


def _report(c, restroom='g-wing', description='Leak under sink', **extra):
    return c.post('/incidents', json={'custodianId': 'joel', 'restroomId': restroom,
                                      'description': description, **extra})


def test_health(client):
    body = client.get('/health').get_json()
    assert body['status'] == 'ok'
    assert body['timestamp'].endswith('Z')


def test_api_prefix_serves_same_routes(staff_client):
    assert staff_client.get('/api/health').status_code == 200
    assert staff_client.get('/api/restrooms').get_json() == staff_client.get('/restrooms').get_json()


def test_reference_data_sorted_by_name(staff_client):
    restrooms = staff_client.get('/restrooms').get_json()
    assert len(restrooms) == 11
    assert [r['name'] for r in restrooms] == sorted(r['name'] for r in restrooms)
    assert {'id': 'g-wing', 'name': 'G Wing', 'building': 'G Wing', 'floor': 1} in restrooms

    custodians = staff_client.get('/custodians').get_json()
    assert [c['id'] for c in custodians] == ['admin', 'jalessa', 'javon', 'joel', 'rey', 'shantelle']


def test_check_flow_blocked_then_unblocked(admin_client):
    resp = admin_client.post('/checks', json={'custodianId': 'joel', 'restroomId': 'g-wing'})
    assert resp.status_code == 201
    body = resp.get_json()
    assert body['success'] is True
    assert body['check']['custodian'] == 'Joel'

    incident = _report(admin_client)
    assert incident.status_code == 201
    incident_id = incident.get_json()['id']
    assert incident.get_json()['incident']['lastCheckedBy'] == 'Joel'

    blocked = admin_client.post('/checks', json={'custodianId': 'rey', 'restroomId': 'g-wing'})
    assert blocked.status_code == 403
    assert blocked.get_json() == {'error': 'Cannot log check - active incident on this restroom',
                                  'reason': 'active_incident'}

    status = admin_client.get('/restrooms/g-wing/status').get_json()
    assert status['hasActiveIncident'] is True
    assert status['lastCheckedBy'] == 'Joel'

    resolved = admin_client.post('/incidents/resolve', json={'incidentId': incident_id})
    assert resolved.status_code == 200
    assert resolved.get_json()['alreadyResolved'] is False
    assert resolved.get_json()['incident']['pending'] is False

    again = admin_client.post('/incidents/resolve', json={'incidentId': str(incident_id)})
    assert again.status_code == 200
    assert again.get_json()['alreadyResolved'] is True
    assert again.get_json()['incident']['resolvedAt'] == resolved.get_json()['incident']['resolvedAt']

    assert admin_client.post('/checks', json={'custodianId': 'rey', 'restroomId': 'g-wing'}).status_code == 201


@pytest.mark.parametrize('payload', [
    {},
    {'custodianId': 'joel'},
    {'restroomId': 'g-wing'},
    {'custodianId': '  ', 'restroomId': 'g-wing'},
    {'custodianId': 'joel', 'restroomId': 'no-such-room'},
])
def test_check_validation(staff_client, payload):
    resp = staff_client.post('/checks', json=payload)
    assert resp.status_code == 400
    assert resp.get_json()['reason'] == 'invalid_request'


def test_non_object_json_rejected(staff_client):
    resp = staff_client.post('/checks', json=['joel', 'g-wing'])
    assert resp.status_code == 400
    assert resp.get_json()['error'] == 'Expected a JSON object'


@pytest.mark.parametrize('description', ['', '    '])
def test_incident_requires_description(staff_client, description):
    resp = _report(staff_client, description=description)
    assert resp.status_code == 400
    assert 'description' in resp.get_json()['fields']
    assert staff_client.get('/incidents').get_json() == []


def test_resolve_validation_and_not_found(admin_client):
    assert admin_client.post('/incidents/resolve', json={}).status_code == 400
    assert admin_client.post('/incidents/resolve', json={'incidentId': 'abc'}).status_code == 400

    resp = admin_client.post('/incidents/resolve', json={'incidentId': 4242})
    assert resp.status_code == 404
    assert resp.get_json()['error'] == 'Incident not found'


def test_unknown_restroom_status(staff_client):
    resp = staff_client.get('/restrooms/z-wing/status')
    assert resp.status_code == 404
    assert resp.get_json()['error'] == 'Restroom not found'


def test_checks_listing_newest_first_and_capped(staff_client):
    base = datetime(2026, 5, 1, 8, 0, tzinfo=timezone.utc)
    with app_module.app.app_context():
        db.session.add_all([
            Check(custodian_id='rey', restroom_id='h-wing', timestamp=base + timedelta(minutes=i))
            for i in range(105)
        ])
        db.session.commit()

    rows = staff_client.get('/checks').get_json()
    assert len(rows) == 100
    assert rows[0]['timestamp'] == '2026-05-01T09:44:00Z'
    assert rows[0]['custodian'] == 'Rey'
    assert rows[0]['restroom'] == 'H Wing'
    assert rows == sorted(rows, key=lambda r: r['timestamp'], reverse=True)


def test_incident_listing_includes_resolved(admin_client):
    first = _report(admin_client, restroom='c-wing').get_json()['id']
    _report(admin_client, restroom='e-wing', description='Broken dryer', severity='high')
    admin_client.post('/incidents/resolve', json={'incidentId': first})

    rows = admin_client.get('/incidents').get_json()
    assert [r['restroomId'] for r in rows] == ['e-wing', 'c-wing']
    assert rows[0]['severity'] == 'high'
    assert rows[0]['pending'] is True
    assert rows[1]['pending'] is False
    assert rows[1]['restroom'] == 'C Wing'


def test_unknown_route_is_json(client):
    resp = client.get('/no-such-thing')
    assert resp.status_code == 404
    assert resp.get_json()['reason'] == 'not_found'


def test_events_stream_delivers_data_changed(staff_client):
    resp = staff_client.get('/events', buffered=False)
    try:
        assert resp.status_code == 200
        assert resp.mimetype == 'text/event-stream'
        assert next(resp.response).startswith(b': connected')
        assert BROADCASTER.listener_count() == 1

        staff_client.post('/checks', json={'custodianId': 'joel', 'restroomId': 'g-wing'})
        assert next(resp.response) == b'data: {"type": "data-changed", "reason": "check"}\n\n'
    finally:
        resp.close()
    assert BROADCASTER.listener_count() == 0


def test_resolve_rejects_oversized_id(admin_client):
    resp = admin_client.post('/incidents/resolve', json={'incidentId': '9' * 30})
    assert resp.status_code == 400
    assert 'incidentId' in resp.get_json()['fields']
