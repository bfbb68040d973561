from datetime import datetime

import pytest
from werkzeug.security import generate_password_hash

from app import create_app
from config import TestingConfig
from models import db, User, ParkingLot, ROLE_DRIVER, ROLE_AUTHORITY

NOW = datetime(2026, 3, 2, 8, 0)


def at(hour, minute=0, day=2):
    return datetime(2026, 3, day, hour, minute)


@pytest.fixture
def app(tmp_path):
    class Config(TestingConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'parking.db'}"

    app = create_app(Config)
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def ctx(app):
    with app.app_context():
        yield
        db.session.remove()


@pytest.fixture
def client(app):
    return app.test_client()


def make_user(username, role=ROLE_DRIVER):
    user = User(username=username, password=generate_password_hash('pw'), role=role)
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def authority(ctx):
    return make_user('warden', ROLE_AUTHORITY)


@pytest.fixture
def driver(ctx):
    return make_user('alice')


@pytest.fixture
def driver2(ctx):
    return make_user('bob')


@pytest.fixture
def make_lot(authority):
    def _make_lot(total_spots=1, available_spots=None, price_per_hour=2.0, name='Central',
                  latitude=15.4968, longitude=73.8278):
        lot = ParkingLot(
            name=name,
            address=f'{name} Road',
            latitude=latitude,
            longitude=longitude,
            total_spots=total_spots,
            available_spots=total_spots if available_spots is None else available_spots,
            price_per_hour=price_per_hour,
            manager_id=authority.id,
        )
        db.session.add(lot)
        db.session.commit()
        return lot
    return _make_lot


@pytest.fixture
def lot(make_lot):
    return make_lot()
