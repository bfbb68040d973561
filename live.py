# live.py
import logging

from flask import session
from flask_socketio import SocketIO, emit, join_room

from models import db, User, ParkingLot, Reservation

log = logging.getLogger(__name__)

socketio = SocketIO()


def lot_event(lot):
    return {'kind': 'lot', 'id': lot.id, 'version': lot.version, 'data': lot.to_dict()}


def reservation_event(reservation):
    return {
        'kind': 'reservation',
        'id': reservation.id,
        'version': reservation.version,
        'data': reservation.to_dict(),
    }


def rooms_for(user):
    if user.is_authority:
        return [f'manager:{user.id}']
    return ['lots', f'user:{user.id}']


def _publish(event, rooms):
    for room in rooms:
        socketio.emit(event['kind'], event, to=room)


def publish_lot(lot):
    _publish(lot_event(lot), ['lots', f'lot:{lot.id}', f'manager:{lot.manager_id}'])


def publish_reservation(reservation):
    rooms = [f'user:{reservation.user_id}', f'lot:{reservation.lot_id}']
    if reservation.lot is not None:
        rooms.append(f'manager:{reservation.lot.manager_id}')
    _publish(reservation_event(reservation), rooms)


def current_state(user):
    if user.is_authority:
        lots = ParkingLot.query.filter_by(manager_id=user.id).all()
        bookings = Reservation.query.join(ParkingLot).filter(ParkingLot.manager_id == user.id).all()
    else:
        lots = ParkingLot.query.all()
        bookings = Reservation.query.filter_by(user_id=user.id).all()
    return [lot_event(lot) for lot in lots] + [reservation_event(r) for r in bookings]


def _session_user():
    user_id = session.get('user_id')
    return db.session.get(User, user_id) if user_id is not None else None


def _send_state(user):
    for event in current_state(user):
        emit(event['kind'], event)


@socketio.on('connect')
def handle_connect(auth=None):
    user = _session_user()
    if user is None:
        return False
    for room in rooms_for(user):
        join_room(room)
    log.info('Live view connected for %s', user.username)
    _send_state(user)


# Resync after a reconnect or a dropped delivery
@socketio.on('request_state')
def handle_request_state():
    user = _session_user()
    if user is not None:
        _send_state(user)


@socketio.on('watch_lot')
def handle_watch_lot(data):
    try:
        lot = db.session.get(ParkingLot, int((data or {}).get('lot_id')))
    except (TypeError, ValueError):
        lot = None
    if lot is None:
        emit('watch_error', {'message': 'Unknown parking lot'})
        return
    join_room(f'lot:{lot.id}')
    emit('lot', lot_event(lot))


class SnapshotView:
    """Consumer-side state: latest snapshot per (kind, id)."""

    def __init__(self):
        self._entities = {}

    def apply(self, event):
        key = (event['kind'], event['id'])
        current = self._entities.get(key)
        if current is not None and current['version'] >= event['version']:
            return False
        self._entities[key] = event
        return True

    def apply_all(self, events):
        return sum(1 for event in events if self.apply(event))

    def get(self, kind, entity_id):
        event = self._entities.get((kind, entity_id))
        return event['data'] if event else None

    def items(self, kind):
        return [e['data'] for (k, _), e in sorted(self._entities.items()) if k == kind]
