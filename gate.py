# gate.py
import io
import json
import logging

import qrcode
from sqlalchemy.orm.exc import StaleDataError

import inventory
from errors import (
    AlreadyScannedError, AuthorizationError, EntryNotScannedError,
    InvalidStateError, ValidationError,
)
from live import publish_lot, publish_reservation
from models import db, utcnow, PENDING_ARRIVAL, ACTIVE, IN_PARKING, COMPLETED
from reservations import get_reservation, release_spot

log = logging.getLogger(__name__)


def _as_int(value, name):
    if value is None or value == '' or isinstance(value, bool):
        raise ValidationError(f'QR code is missing {name}')
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f'QR code has an invalid {name}')


def parse_qr_payload(payload):
    """Decode a ticket payload into (booking_id, parking_lot_id)."""
    if isinstance(payload, (str, bytes)):
        try:
            payload = json.loads(payload)
        except ValueError:
            raise ValidationError('Invalid QR code, scan a valid parking ticket')
    if not isinstance(payload, dict):
        raise ValidationError('Invalid QR code, scan a valid parking ticket')
    return _as_int(payload.get('bookingId'), 'bookingId'), _as_int(payload.get('parkingLotId'), 'parkingLotId')


def _check_scan(reservation, lot_id, operator):
    if lot_id is not None and reservation.lot_id != lot_id:
        raise ValidationError('Ticket belongs to a different parking lot')
    if operator is not None and reservation.lot.manager_id != operator.id:
        raise AuthorizationError('You do not manage this parking lot')


def _commit_scan(reservation):
    try:
        db.session.commit()
    except StaleDataError:
        db.session.rollback()
        raise InvalidStateError('Reservation was modified concurrently, scan again')
    except Exception:
        db.session.rollback()
        raise


def scan_entry(reservation_id, now=None, lot_id=None, operator=None):
    now = now or utcnow()
    reservation = get_reservation(reservation_id)
    _check_scan(reservation, lot_id, operator)

    with inventory.lot_lock(reservation.lot_id):
        try:
            inventory.lock_lot_row(reservation.lot_id)
            db.session.refresh(reservation)
            if reservation.entry_scanned:
                raise AlreadyScannedError('Entry already scanned for this booking')
            if reservation.status not in (PENDING_ARRIVAL, ACTIVE):
                raise InvalidStateError(f'Cannot check in a {reservation.status} reservation')
        except Exception:
            db.session.rollback()
            raise

        reservation.entry_scanned = True
        reservation.entry_time = now
        reservation.status = IN_PARKING
        _commit_scan(reservation)

    log.info('Reservation %s checked in at lot %s', reservation.id, reservation.lot_id)
    publish_reservation(reservation)
    return reservation


def scan_exit(reservation_id, now=None, lot_id=None, operator=None):
    now = now or utcnow()
    reservation = get_reservation(reservation_id)
    _check_scan(reservation, lot_id, operator)

    with inventory.lot_lock(reservation.lot_id):
        try:
            inventory.lock_lot_row(reservation.lot_id)
            db.session.refresh(reservation)
            if not reservation.entry_scanned:
                raise EntryNotScannedError('Scan entry before exit')
            if reservation.exit_scanned:
                raise AlreadyScannedError('Exit already scanned for this booking')
            if reservation.status != IN_PARKING:
                raise InvalidStateError(f'Cannot check out a {reservation.status} reservation')

            reservation.exit_scanned = True
            reservation.exit_time = now
            reservation.status = COMPLETED
            reservation.realized_hours = round(
                max(0.0, (now - reservation.entry_time).total_seconds() / 3600), 2
            )
            release_spot(reservation.lot_id)
        except Exception:
            db.session.rollback()
            raise
        _commit_scan(reservation)

    log.info(
        'Reservation %s checked out of lot %s after %.2fh',
        reservation.id, reservation.lot_id, reservation.realized_hours,
    )
    publish_lot(reservation.lot)
    publish_reservation(reservation)
    return reservation


def render_ticket(reservation):
    """PNG bytes of the QR code the driver shows at the gate."""
    qr = qrcode.QRCode(version=1, box_size=10, border=5)
    qr.add_data(json.dumps(reservation.qr_payload()))
    qr.make(fit=True)
    img = qr.make_image(fill_color='black', back_color='white')

    img_io = io.BytesIO()
    img.save(img_io, 'PNG')
    img_io.seek(0)
    return img_io
