# inventory.py
import logging
import threading

from sqlalchemy import select, update

from errors import AuthorizationError, CapacityError, NotFoundError, ValidationError
from live import publish_lot
from models import db, ParkingLot

log = logging.getLogger(__name__)

_lot_locks = {}
_lot_locks_guard = threading.Lock()


def lot_lock(lot_id):
    """Per-lot mutex held around every check-then-commit sequence on a lot."""
    with _lot_locks_guard:
        lock = _lot_locks.get(lot_id)
        if lock is None:
            lock = _lot_locks[lot_id] = threading.RLock()
        return lock


def lock_lot_row(lot_id):
    # FOR UPDATE is dropped by backends without row locks (SQLite); lot_lock covers those
    stmt = (
        select(ParkingLot)
        .where(ParkingLot.id == lot_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    lot = db.session.execute(stmt).scalar_one_or_none()
    if lot is None:
        raise NotFoundError(f'Parking lot {lot_id} not found')
    return lot


def get_lot(lot_id):
    lot = db.session.get(ParkingLot, lot_id)
    if lot is None:
        raise NotFoundError(f'Parking lot {lot_id} not found')
    return lot


def apply_delta(lot_id, delta, commit=True):
    # commit=False joins the caller's transaction
    if not isinstance(delta, int) or isinstance(delta, bool):
        raise ValidationError('delta must be an integer')

    stmt = (
        update(ParkingLot)
        .where(ParkingLot.id == lot_id)
        .where(ParkingLot.available_spots + delta >= 0)
        .where(ParkingLot.available_spots + delta <= ParkingLot.total_spots)
        .values(
            available_spots=ParkingLot.available_spots + delta,
            version=ParkingLot.version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    with lot_lock(lot_id):
        try:
            result = db.session.execute(stmt)
            if result.rowcount == 0:
                lot = db.session.get(ParkingLot, lot_id, populate_existing=True)
                if lot is None:
                    raise NotFoundError(f'Parking lot {lot_id} not found')
                log.warning(
                    'Rejected delta %+d on lot %s (available=%s, total=%s)',
                    delta, lot_id, lot.available_spots, lot.total_spots,
                )
                if delta < 0:
                    raise CapacityError(f'Parking lot {lot.name} is full, choose another lot')
                raise CapacityError(f'Parking lot {lot.name} already has all {lot.total_spots} spots free')

            lot = db.session.get(ParkingLot, lot_id, populate_existing=True)
            if commit:
                db.session.commit()
        except Exception:
            if commit:
                db.session.rollback()
            raise

    log.info('Lot %s availability %+d -> %s/%s', lot_id, delta, lot.available_spots, lot.total_spots)
    if commit:
        publish_lot(lot)
    return lot.available_spots


def get_availability(lot_id):
    lot = db.session.get(ParkingLot, lot_id, populate_existing=True)
    if lot is None:
        raise NotFoundError(f'Parking lot {lot_id} not found')
    return {
        'lot_id': lot.id,
        'total_spots': lot.total_spots,
        'available_spots': lot.available_spots,
        'version': lot.version,
    }


def _number(value, name, cast):
    try:
        return cast(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{name} must be a number')


def create_lot(manager, name, address, latitude, longitude, total_spots, price_per_hour,
               available_spots=None):
    if not manager.is_authority:
        raise AuthorizationError('Only authority accounts can add parking lots')

    name = (name or '').strip()
    address = (address or '').strip()
    if not name or not address:
        raise ValidationError('name and address are required')

    latitude = _number(latitude, 'latitude', float)
    longitude = _number(longitude, 'longitude', float)
    if not -90 <= latitude <= 90 or not -180 <= longitude <= 180:
        raise ValidationError('latitude/longitude out of range')

    total_spots = _number(total_spots, 'total_spots', int)
    if total_spots < 0:
        raise ValidationError('total_spots must not be negative')

    price_per_hour = _number(price_per_hour, 'price_per_hour', float)
    if price_per_hour <= 0:
        raise ValidationError('price_per_hour must be positive')

    if available_spots is None or available_spots == '':
        available_spots = total_spots
    available_spots = _number(available_spots, 'available_spots', int)
    if not 0 <= available_spots <= total_spots:
        raise ValidationError('available_spots must be between 0 and total_spots')

    lot = ParkingLot(
        name=name,
        address=address,
        latitude=latitude,
        longitude=longitude,
        total_spots=total_spots,
        available_spots=available_spots,
        price_per_hour=price_per_hour,
        manager_id=manager.id,
    )
    db.session.add(lot)
    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        log.exception('Failed to add parking lot %s', name)
        raise

    log.info('Lot %s (%s) added by %s with %s spots', lot.id, name, manager.username, total_spots)
    publish_lot(lot)
    return lot


def adjust_spots(lot_id, manager, delta):
    """Manual +1/-1 correction from the authority dashboard."""
    lot = get_lot(lot_id)
    if lot.manager_id != manager.id:
        raise AuthorizationError('You do not manage this parking lot')
    if delta not in (-1, 1):
        raise ValidationError('delta must be +1 or -1')
    return apply_delta(lot_id, delta)


def occupancy_summary(manager_id):
    lots = ParkingLot.query.filter_by(manager_id=manager_id).all()
    total_capacity = sum(lot.total_spots for lot in lots)
    total_available = sum(lot.available_spots for lot in lots)
    if total_capacity > 0:
        occupancy = round((total_capacity - total_available) / total_capacity * 100)
    else:
        occupancy = 0
    return {
        'lots': len(lots),
        'total_capacity': total_capacity,
        'total_available': total_available,
        'occupancy_percentage': occupancy,
    }
