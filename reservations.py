import logging
from datetime import datetime, timedelta, timezone

from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

import inventory
from errors import (
    AuthorizationError, CapacityError, ConflictError, InvalidStateError,
    NotFoundError, StaleReadError, ValidationError,
)
from live import publish_lot, publish_reservation
from models import (
    db, ParkingLot, Reservation, utcnow,
    PENDING_ARRIVAL, ACTIVE, CANCELLED, OPEN_STATUSES,
)

log = logging.getLogger(__name__)


def parse_timestamp(value, name='timestamp'):
    """ISO-8601 string (or datetime) to a naive UTC datetime."""
    if isinstance(value, datetime):
        parsed = value
    else:
        if not value or not isinstance(value, str):
            raise ValidationError(f'{name} is required')
        try:
            parsed = datetime.fromisoformat(value.strip().replace('Z', '+00:00'))
        except ValueError:
            raise ValidationError(f'{name} is not a valid ISO-8601 timestamp')
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def validate_window(start_time, end_time, is_advance, now):
    cfg = current_app.config
    if end_time <= start_time:
        raise ValidationError('end_time must be after start_time')

    hours = (end_time - start_time).total_seconds() / 3600
    if hours < cfg['MIN_BOOKING_HOURS'] or hours > cfg['MAX_BOOKING_HOURS']:
        raise ValidationError(
            f"Booking must last between {cfg['MIN_BOOKING_HOURS']:g} and "
            f"{cfg['MAX_BOOKING_HOURS']:g} hours"
        )

    if is_advance:
        if start_time <= now:
            raise ValidationError('Advance booking must start in the future')
        if start_time > now + timedelta(days=cfg['ADVANCE_HORIZON_DAYS']):
            raise ValidationError(
                f"Advance booking can start at most {cfg['ADVANCE_HORIZON_DAYS']} days ahead"
            )
    else:
        tolerance = timedelta(seconds=cfg['IMMEDIATE_START_TOLERANCE_SECONDS'])
        if abs(start_time - now) > tolerance:
            raise ValidationError('Immediate booking must start now')
    return hours


def get_reservation(reservation_id):
    reservation = db.session.get(Reservation, reservation_id)
    if reservation is None:
        raise NotFoundError(f'Reservation {reservation_id} not found')
    return reservation


def find_conflict(lot_id, start_time, end_time):
    open_reservations = (
        Reservation.query
        .filter(Reservation.lot_id == lot_id, Reservation.status.in_(OPEN_STATUSES))
        .order_by(Reservation.start_time)
        .all()
    )
    for existing in open_reservations:
        if existing.overlaps(start_time, end_time):
            return existing
    return None


def _checked_conflict(lot_id, start_time, end_time):
    try:
        return find_conflict(lot_id, start_time, end_time)
    except SQLAlchemyError:
        log.exception('Conflict check for lot %s unavailable', lot_id)
        if not current_app.config['FAIL_OPEN_ON_STALE_READ']:
            raise StaleReadError()
        log.warning('Booking on lot %s proceeding without overlap check', lot_id)
        db.session.rollback()
        inventory.lock_lot_row(lot_id)
        return None


def release_spot(lot_id):
    try:
        inventory.apply_delta(lot_id, 1, commit=False)
    except CapacityError:
        # A manual correction already freed this spot
        log.warning('Lot %s already at capacity, spot release absorbed', lot_id)


def _find_by_request(requester, request_id):
    if not request_id:
        return None
    return Reservation.query.filter_by(user_id=requester.id, request_id=request_id).first()


def create_reservation(lot_id, requester, start_time, end_time, is_advance, now=None,
                       request_id=None):
    now = now or utcnow()
    request_id = (request_id or '').strip() or None

    existing = _find_by_request(requester, request_id)
    if existing is not None:
        log.info('Duplicate booking request %s, returning reservation %s', request_id, existing.id)
        return existing

    hours = validate_window(start_time, end_time, is_advance, now)

    expire_stale_reservations(now, lot_id=lot_id)

    with inventory.lot_lock(lot_id):
        try:
            lot = inventory.lock_lot_row(lot_id)

            conflicting = _checked_conflict(lot_id, start_time, end_time)
            if conflicting is not None:
                log.warning(
                    'Booking on lot %s for %s-%s conflicts with reservation %s',
                    lot_id, start_time, end_time, conflicting.id,
                )
                raise ConflictError(conflicting)

            inventory.apply_delta(lot_id, -1, commit=False)

            amount = round(hours * lot.price_per_hour, 2)
            if amount <= 0:
                raise ValidationError('Booking amount must be positive')

            reservation = Reservation(
                lot_id=lot_id,
                user_id=requester.id,
                start_time=start_time,
                end_time=end_time,
                status=PENDING_ARRIVAL if is_advance else ACTIVE,
                is_advance=bool(is_advance),
                amount=amount,
                request_id=request_id,
            )
            db.session.add(reservation)
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            existing = _find_by_request(requester, request_id)
            if existing is None:
                raise
            return existing
        except Exception:
            db.session.rollback()
            raise

    log.info(
        'Reservation %s created on lot %s for user %s (%s, %.2f)',
        reservation.id, lot_id, requester.id, reservation.status, amount,
    )
    publish_lot(reservation.lot)
    publish_reservation(reservation)
    return reservation


def _can_manage(user, reservation):
    if user.id == reservation.user_id:
        return True
    return user.is_authority and reservation.lot.manager_id == user.id


def _cancel(reservation, reason, now):
    reservation.status = CANCELLED
    reservation.cancel_reason = reason
    reservation.updated_at = now
    release_spot(reservation.lot_id)


def cancel_reservation(reservation_id, requester=None, now=None, reason='requested'):
    now = now or utcnow()
    reservation = get_reservation(reservation_id)
    if requester is not None and not _can_manage(requester, reservation):
        raise AuthorizationError('You cannot cancel this reservation')

    with inventory.lot_lock(reservation.lot_id):
        try:
            inventory.lock_lot_row(reservation.lot_id)
            db.session.refresh(reservation)
            if reservation.status not in OPEN_STATUSES:
                raise InvalidStateError(f'Reservation is already {reservation.status}')
            _cancel(reservation, reason, now)
            db.session.commit()
        except StaleDataError:
            db.session.rollback()
            raise InvalidStateError('Reservation was modified concurrently, reload and retry')
        except Exception:
            db.session.rollback()
            raise

    log.info('Reservation %s cancelled (%s)', reservation.id, reason)
    publish_lot(reservation.lot)
    publish_reservation(reservation)
    return reservation


def expire_stale_reservations(now=None, lot_id=None):
    # Unscanned holds past start + grace are cancelled, pending ones that started go active
    now = now or utcnow()
    grace = timedelta(minutes=current_app.config['ARRIVAL_GRACE_MINUTES'])

    query = Reservation.query.filter(
        Reservation.status.in_((PENDING_ARRIVAL, ACTIVE)),
        Reservation.entry_scanned.is_(False),
        Reservation.start_time <= now,
    )
    if lot_id is not None:
        query = query.filter(Reservation.lot_id == lot_id)
    lot_ids = sorted({r.lot_id for r in query.all()})

    activated, expired = [], []
    for current_lot_id in lot_ids:
        touched = []
        with inventory.lot_lock(current_lot_id):
            try:
                inventory.lock_lot_row(current_lot_id)
                candidates = query.filter(Reservation.lot_id == current_lot_id).populate_existing().all()
                for reservation in candidates:
                    if now >= reservation.start_time + grace:
                        _cancel(reservation, 'expired', now)
                        expired.append(reservation.id)
                    elif reservation.status == PENDING_ARRIVAL:
                        reservation.status = ACTIVE
                        reservation.updated_at = now
                        activated.append(reservation.id)
                    else:
                        continue
                    touched.append(reservation)
                db.session.commit()
            except Exception:
                db.session.rollback()
                log.exception('Expiry sweep failed for lot %s', current_lot_id)
                raise

        for reservation in touched:
            publish_reservation(reservation)
        if touched:
            publish_lot(db.session.get(ParkingLot, current_lot_id))

    if activated or expired:
        log.info('Expiry sweep: %d activated, %d expired', len(activated), len(expired))
    return {'activated': activated, 'expired': expired}


def list_reservations(user_id=None, manager_id=None, statuses=None):
    query = Reservation.query
    if user_id is not None:
        query = query.filter(Reservation.user_id == user_id)
    if manager_id is not None:
        query = query.join(ParkingLot).filter(ParkingLot.manager_id == manager_id)
    if statuses:
        query = query.filter(Reservation.status.in_(statuses))
    return query.order_by(Reservation.start_time).all()
