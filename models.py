# models.py
from flask_sqlalchemy import SQLAlchemy
from datetime import datetime, timezone

db = SQLAlchemy()

ROLE_DRIVER = 'driver'
ROLE_AUTHORITY = 'authority'

PENDING_ARRIVAL = 'pending_arrival'
ACTIVE = 'active'
IN_PARKING = 'in_parking'
COMPLETED = 'completed'
CANCELLED = 'cancelled'

OPEN_STATUSES = (PENDING_ARRIVAL, ACTIVE, IN_PARKING)
TERMINAL_STATUSES = (COMPLETED, CANCELLED)


def utcnow():
    # Naive UTC, the way every timestamp column is stored
    return datetime.now(timezone.utc).replace(tzinfo=None)


class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    password = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(20), nullable=False, default=ROLE_DRIVER)
    reservations = db.relationship('Reservation', backref='user', lazy=True)
    managed_lots = db.relationship('ParkingLot', backref='manager', lazy=True)

    @property
    def is_authority(self):
        return self.role == ROLE_AUTHORITY

    def to_dict(self):
        return {'id': self.id, 'username': self.username, 'role': self.role}


class ParkingLot(db.Model):
    __table_args__ = (
        db.CheckConstraint('total_spots >= 0', name='ck_lot_total_non_negative'),
        db.CheckConstraint(
            'available_spots >= 0 AND available_spots <= total_spots',
            name='ck_lot_available_in_range',
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    address = db.Column(db.String(200), nullable=False)
    latitude = db.Column(db.Float, nullable=False)
    longitude = db.Column(db.Float, nullable=False)
    total_spots = db.Column(db.Integer, nullable=False)
    available_spots = db.Column(db.Integer, nullable=False)
    price_per_hour = db.Column(db.Float, nullable=False)
    rating = db.Column(db.Float, nullable=False, default=0)
    manager_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    version = db.Column(db.Integer, nullable=False, default=1)
    reservations = db.relationship('Reservation', backref='lot', lazy=True)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'address': self.address,
            'latitude': self.latitude,
            'longitude': self.longitude,
            'total_spots': self.total_spots,
            'available_spots': self.available_spots,
            'price_per_hour': self.price_per_hour,
            'rating': self.rating,
            'manager_id': self.manager_id,
            'version': self.version,
        }


class Reservation(db.Model):
    __table_args__ = (
        db.UniqueConstraint('user_id', 'request_id', name='uq_reservation_request'),
        db.Index('ix_reservation_lot_status', 'lot_id', 'status'),
    )

    id = db.Column(db.Integer, primary_key=True)
    lot_id = db.Column(db.Integer, db.ForeignKey('parking_lot.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    start_time = db.Column(db.DateTime, nullable=False)
    end_time = db.Column(db.DateTime, nullable=False)
    status = db.Column(db.String(20), nullable=False, default=PENDING_ARRIVAL)
    is_advance = db.Column(db.Boolean, nullable=False, default=False)
    entry_scanned = db.Column(db.Boolean, nullable=False, default=False)
    exit_scanned = db.Column(db.Boolean, nullable=False, default=False)
    entry_time = db.Column(db.DateTime)
    exit_time = db.Column(db.DateTime)
    realized_hours = db.Column(db.Float)
    amount = db.Column(db.Float, nullable=False)
    request_id = db.Column(db.String(64))
    cancel_reason = db.Column(db.String(20))
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    version = db.Column(db.Integer, nullable=False)

    __mapper_args__ = {'version_id_col': version}

    @property
    def duration_hours(self):
        return (self.end_time - self.start_time).total_seconds() / 3600

    @property
    def is_open(self):
        return self.status in OPEN_STATUSES

    def overlaps(self, start_time, end_time):
        # Half-open windows: touching end/start is not an overlap
        return start_time < self.end_time and end_time > self.start_time

    def qr_payload(self):
        return {'bookingId': self.id, 'parkingLotId': self.lot_id}

    def to_dict(self):
        return {
            'id': self.id,
            'lot_id': self.lot_id,
            'lot_name': self.lot.name if self.lot else None,
            'manager_id': self.lot.manager_id if self.lot else None,
            'user_id': self.user_id,
            'start_time': self.start_time.isoformat(),
            'end_time': self.end_time.isoformat(),
            'duration_hours': round(self.duration_hours, 2),
            'status': self.status,
            'is_advance': self.is_advance,
            'entry_scanned': self.entry_scanned,
            'exit_scanned': self.exit_scanned,
            'entry_time': self.entry_time.isoformat() if self.entry_time else None,
            'exit_time': self.exit_time.isoformat() if self.exit_time else None,
            'realized_hours': self.realized_hours,
            'amount': self.amount,
            'request_id': self.request_id,
            'cancel_reason': self.cancel_reason,
            'version': self.version,
        }
