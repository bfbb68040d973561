import threading

import pytest

import inventory
from errors import AuthorizationError, CapacityError, NotFoundError, ValidationError
from models import db, User, ParkingLot


def test_apply_delta_returns_new_count(lot):
    assert inventory.apply_delta(lot.id, -1) == 0
    assert inventory.get_availability(lot.id)['available_spots'] == 0
    assert inventory.apply_delta(lot.id, 1) == 1


def test_apply_delta_bumps_version(lot):
    before = inventory.get_availability(lot.id)['version']
    inventory.apply_delta(lot.id, -1)
    assert inventory.get_availability(lot.id)['version'] == before + 1


def test_apply_delta_never_goes_negative(make_lot):
    lot = make_lot(total_spots=2, available_spots=0)
    with pytest.raises(CapacityError):
        inventory.apply_delta(lot.id, -1)
    assert inventory.get_availability(lot.id)['available_spots'] == 0


def test_apply_delta_never_exceeds_total(make_lot):
    lot = make_lot(total_spots=2)
    with pytest.raises(CapacityError):
        inventory.apply_delta(lot.id, 1)
    assert inventory.get_availability(lot.id)['available_spots'] == 2


def test_apply_delta_unknown_lot(ctx):
    with pytest.raises(NotFoundError):
        inventory.apply_delta(999, -1)


def test_apply_delta_rejects_non_integer(lot):
    with pytest.raises(ValidationError):
        inventory.apply_delta(lot.id, True)
    with pytest.raises(ValidationError):
        inventory.apply_delta(lot.id, 0.5)


def test_concurrent_deltas_do_not_lose_updates(app, make_lot):
    lot = make_lot(total_spots=5)
    lot_id = lot.id
    barrier = threading.Barrier(8)
    outcomes = []

    def take_spot():
        with app.app_context():
            barrier.wait()
            try:
                inventory.apply_delta(lot_id, -1)
                outcomes.append('ok')
            except CapacityError:
                outcomes.append('full')
            finally:
                db.session.remove()

    threads = [threading.Thread(target=take_spot) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count('ok') == 5
    assert outcomes.count('full') == 3
    assert inventory.get_availability(lot_id)['available_spots'] == 0


def test_create_lot_defaults_availability_to_total(authority):
    lot = inventory.create_lot(authority, 'North', 'North Road', '15.5', '73.8', '10', '3.5')
    assert lot.total_spots == 10
    assert lot.available_spots == 10
    assert lot.manager_id == authority.id


@pytest.mark.parametrize('overrides', [
    {'name': ''},
    {'latitude': 95},
    {'longitude': 'east'},
    {'total_spots': -1},
    {'price_per_hour': 0},
    {'available_spots': 11},
])
def test_create_lot_validation(authority, overrides):
    fields = dict(name='North', address='North Road', latitude=15.5, longitude=73.8,
                  total_spots=10, price_per_hour=3.5)
    fields.update(overrides)
    with pytest.raises(ValidationError):
        inventory.create_lot(authority, **fields)
    assert ParkingLot.query.count() == 0


def test_drivers_cannot_create_lots(driver):
    with pytest.raises(AuthorizationError):
        inventory.create_lot(driver, 'North', 'North Road', 15.5, 73.8, 10, 3.5)


def test_adjust_spots(authority, lot):
    assert inventory.adjust_spots(lot.id, authority, -1) == 0
    with pytest.raises(ValidationError):
        inventory.adjust_spots(lot.id, authority, 2)


def test_adjust_spots_requires_manager(lot):
    other = User(username='other', password='x', role='authority')
    db.session.add(other)
    db.session.commit()
    with pytest.raises(AuthorizationError):
        inventory.adjust_spots(lot.id, other, -1)


def test_occupancy_summary(authority, make_lot):
    make_lot(total_spots=10, available_spots=4)
    make_lot(total_spots=10, available_spots=10, name='East')
    summary = inventory.occupancy_summary(authority.id)
    assert summary == {
        'lots': 2,
        'total_capacity': 20,
        'total_available': 14,
        'occupancy_percentage': 30,
    }


def test_occupancy_summary_without_lots(authority):
    assert inventory.occupancy_summary(authority.id)['occupancy_percentage'] == 0
