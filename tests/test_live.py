from datetime import timedelta

import pytest

import gate
import inventory
import reservations
from conftest import NOW, at
from live import SnapshotView, socketio


def snapshot(kind, entity_id, version, **data):
    return {'kind': kind, 'id': entity_id, 'version': version, 'data': dict(id=entity_id, **data)}


def received_events(sio):
    return [msg['args'][0] for msg in sio.get_received() if msg['name'] in ('lot', 'reservation')]


@pytest.fixture
def connect(app):
    clients = []

    def _connect(username=None):
        http = app.test_client()
        if username is not None:
            resp = http.post('/login', json={'username': username, 'password': 'pw'})
            assert resp.status_code == 200
        sio = socketio.test_client(app, flask_test_client=http)
        clients.append(sio)
        return sio

    yield _connect
    for sio in clients:
        if sio.is_connected():
            sio.disconnect()


def test_view_keeps_latest_version():
    view = SnapshotView()
    assert view.apply(snapshot('lot', 1, 2, available_spots=3))
    assert not view.apply(snapshot('lot', 1, 1, available_spots=5))
    assert not view.apply(snapshot('lot', 1, 2, available_spots=9))
    assert view.get('lot', 1)['available_spots'] == 3


def test_views_converge_regardless_of_delivery_order():
    events = [
        snapshot('reservation', 4, 1, status='active'),
        snapshot('reservation', 4, 2, status='in_parking'),
        snapshot('lot', 1, 3, available_spots=0),
        snapshot('reservation', 4, 3, status='completed'),
        snapshot('lot', 1, 4, available_spots=1),
    ]
    in_order, reversed_order, duplicated = SnapshotView(), SnapshotView(), SnapshotView()
    in_order.apply_all(events)
    reversed_order.apply_all(reversed(events))
    duplicated.apply_all(events[2:] + events + events[:2])

    for view in (reversed_order, duplicated):
        assert view.items('reservation') == in_order.items('reservation')
        assert view.items('lot') == in_order.items('lot')
    assert in_order.get('reservation', 4)['status'] == 'completed'


def test_anonymous_connection_is_refused(ctx, connect):
    assert not connect().is_connected()


def test_connect_sends_current_state(lot, driver, connect):
    reservations.create_reservation(lot.id, driver, at(10), at(11), True, now=NOW)

    sio = connect('alice')
    assert sio.is_connected()
    view = SnapshotView()
    view.apply_all(received_events(sio))
    assert view.get('lot', lot.id)['available_spots'] == 0
    assert [r['status'] for r in view.items('reservation')] == ['pending_arrival']


def test_request_state_resends_snapshots(lot, driver, connect):
    sio = connect('alice')
    sio.get_received()

    sio.emit('request_state')
    events = received_events(sio)
    assert [(e['kind'], e['id']) for e in events] == [('lot', lot.id)]


def test_driver_and_authority_views_agree(lot, driver, authority, connect):
    driver_sio = connect('alice')
    authority_sio = connect('warden')
    driver_view, authority_view = SnapshotView(), SnapshotView()
    driver_view.apply_all(received_events(driver_sio))
    authority_view.apply_all(received_events(authority_sio))

    r = reservations.create_reservation(lot.id, driver, at(10), at(11), True, now=NOW)
    gate.scan_entry(r.id, now=at(9, 58))
    gate.scan_exit(r.id, now=at(10, 50))

    driver_view.apply_all(reversed(received_events(driver_sio)))
    authority_view.apply_all(received_events(authority_sio))
    for view in (driver_view, authority_view):
        assert view.get('reservation', r.id)['status'] == 'completed'
        assert view.get('lot', lot.id)['available_spots'] == 1


def test_other_drivers_only_see_lot_counts(lot, driver, driver2, connect):
    bob = connect('bob')
    bob.get_received()

    reservations.create_reservation(lot.id, driver, NOW, NOW + timedelta(hours=1), False, now=NOW)
    events = received_events(bob)
    assert {e['kind'] for e in events} == {'lot'}
    assert events[-1]['data']['available_spots'] == 0


def test_lot_watchers_see_cancellations(lot, driver, driver2, connect):
    r = reservations.create_reservation(lot.id, driver, NOW, NOW + timedelta(hours=1), False, now=NOW)
    watcher = connect('bob')
    watcher.get_received()
    watcher.emit('watch_lot', {'lot_id': lot.id})

    reservations.cancel_reservation(r.id, now=NOW)
    view = SnapshotView()
    view.apply_all(received_events(watcher))
    assert view.get('reservation', r.id)['status'] == 'cancelled'
    assert view.get('lot', lot.id)['available_spots'] == 1


def test_watch_unknown_lot(ctx, driver, connect):
    sio = connect('alice')
    sio.get_received()
    sio.emit('watch_lot', {'lot_id': 999})
    assert [msg['name'] for msg in sio.get_received()] == ['watch_error']


def test_manual_adjustment_reaches_manager(lot, authority, connect):
    sio = connect('warden')
    sio.get_received()

    inventory.adjust_spots(lot.id, authority, -1)
    events = received_events(sio)
    assert events[-1]['kind'] == 'lot'
    assert events[-1]['data']['available_spots'] == 0
