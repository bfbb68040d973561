from flask import Flask, Blueprint, request, jsonify, session, g, send_file, current_app
from werkzeug.security import generate_password_hash, check_password_hash
from functools import wraps
from datetime import timedelta
import logging
import math

import click

import gate
import inventory
import reservations
import search
from config import Config
from errors import AuthorizationError, NotFoundError, ValidationError, register_error_handlers
from live import socketio
from models import db, User, ParkingLot, utcnow, ROLE_DRIVER, ROLE_AUTHORITY

log = logging.getLogger(__name__)

bp = Blueprint('parking', __name__)


def current_user():
    if 'user' not in g:
        user_id = session.get('user_id')
        g.user = db.session.get(User, user_id) if user_id is not None else None
    return g.user


# Login decorator
def login_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if current_user() is None:
            return jsonify({'status': 'error', 'error': 'Unauthorized', 'message': 'Please login first'}), 401
        return f(*args, **kwargs)
    return decorated_function


# Authority decorator
def authority_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        user = current_user()
        if user is None:
            return jsonify({'status': 'error', 'error': 'Unauthorized', 'message': 'Please login first'}), 401
        if not user.is_authority:
            raise AuthorizationError('Authority access required')
        return f(*args, **kwargs)
    return decorated_function


def _json_body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError('Expected a JSON object')
    return data


def _float_arg(name, default=None):
    value = request.args.get(name)
    if value is None or value == '':
        if default is None:
            raise ValidationError(f'{name} is required')
        return default
    try:
        return float(value)
    except ValueError:
        raise ValidationError(f'{name} must be a number')


@bp.route('/health')
def health():
    return jsonify({'status': 'ok'})


@bp.route('/register', methods=['POST'])
def register():
    data = _json_body()
    username = (data.get('username') or '').strip()
    password = data.get('password') or ''
    role = data.get('role') or ROLE_DRIVER

    if not username or not password:
        raise ValidationError('username and password are required')
    if role not in (ROLE_DRIVER, ROLE_AUTHORITY):
        raise ValidationError('role must be driver or authority')
    if User.query.filter_by(username=username).first():
        raise ValidationError('Username already exists')

    user = User(username=username, password=generate_password_hash(password), role=role)
    db.session.add(user)
    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        log.exception('Registration failed for %s', username)
        raise

    log.info('Registered %s user %s', role, username)
    return jsonify({'status': 'success', 'user': user.to_dict()}), 201


@bp.route('/login', methods=['POST'])
def login():
    data = _json_body()
    username = (data.get('username') or '').strip()
    password = data.get('password') or ''

    user = User.query.filter_by(username=username).first()
    if user and check_password_hash(user.password, password):
        session.clear()
        session['user_id'] = user.id
        return jsonify({'status': 'success', 'user': user.to_dict()})

    log.warning('Failed login for %s', username)
    return jsonify({'status': 'error', 'error': 'Unauthorized', 'message': 'Invalid username or password'}), 401


@bp.route('/logout', methods=['POST'])
def logout():
    session.clear()
    return jsonify({'status': 'success'})


@bp.route('/api/me')
@login_required
def me():
    return jsonify(current_user().to_dict())


# -------------------------
# Driver
# -------------------------
@bp.route('/api/lots')
@login_required
def list_lots():
    return jsonify([lot.to_dict() for lot in ParkingLot.query.order_by(ParkingLot.id).all()])


@bp.route('/api/lots/nearby')
@login_required
def nearby_lots():
    latitude = _float_arg('lat')
    longitude = _float_arg('lng')
    if request.args.get('radius') == 'all':
        radius = None
    else:
        radius = _float_arg('radius', current_app.config['DEFAULT_SEARCH_RADIUS_M'])

    results = search.find_lots_near(latitude, longitude, radius)
    lots = []
    for lot, distance in results:
        item = lot.to_dict()
        item['distance_m'] = round(distance)
        lots.append(item)
    return jsonify({'radius_m': radius, 'lots': lots})


@bp.route('/api/search', methods=['POST'])
@login_required
def parse_search():
    data = _json_body()
    return jsonify(search.parse_search_query(data.get('query')))


@bp.route('/api/lots/<int:lot_id>/availability')
@login_required
def lot_availability(lot_id):
    return jsonify(inventory.get_availability(lot_id))


def _booking_window(data, is_advance, now):
    if is_advance:
        start_time = reservations.parse_timestamp(data.get('start_time'), 'start_time')
    else:
        start_time = now

    if data.get('end_time'):
        end_time = reservations.parse_timestamp(data.get('end_time'), 'end_time')
    else:
        try:
            hours = float(data.get('duration_hours'))
        except (TypeError, ValueError):
            raise ValidationError('end_time or duration_hours is required')
        if not math.isfinite(hours):
            raise ValidationError('duration_hours must be a finite number')
        try:
            end_time = start_time + timedelta(hours=hours)
        except (ValueError, OverflowError):
            raise ValidationError('duration_hours is out of range')
    return start_time, end_time


@bp.route('/api/reservations', methods=['POST'])
@login_required
def create_reservation():
    data = _json_body()
    try:
        lot_id = int(data.get('lot_id'))
    except (TypeError, ValueError):
        raise ValidationError('lot_id is required')

    is_advance = data.get('is_advance', False)
    if not isinstance(is_advance, bool):
        raise ValidationError('is_advance must be true or false')
    now = utcnow()
    start_time, end_time = _booking_window(data, is_advance, now)
    request_id = request.headers.get('X-Request-Id') or data.get('request_id')

    reservation = reservations.create_reservation(
        lot_id, current_user(), start_time, end_time, is_advance,
        now=now, request_id=request_id,
    )
    return jsonify({
        'status': 'success',
        'reservation': reservation.to_dict(),
        'qr_payload': reservation.qr_payload(),
    }), 201


@bp.route('/api/reservations')
@login_required
def my_reservations():
    statuses = request.args.getlist('status')
    items = reservations.list_reservations(user_id=current_user().id, statuses=statuses or None)
    return jsonify([r.to_dict() for r in items])


@bp.route('/api/reservations/<int:reservation_id>/cancel', methods=['POST'])
@login_required
def cancel_reservation(reservation_id):
    reservation = reservations.cancel_reservation(reservation_id, requester=current_user())
    return jsonify({'status': 'success', 'reservation': reservation.to_dict()})


@bp.route('/api/reservations/<int:reservation_id>/ticket')
@login_required
def reservation_ticket(reservation_id):
    reservation = reservations.get_reservation(reservation_id)
    if reservation.user_id != current_user().id:
        raise NotFoundError(f'Reservation {reservation_id} not found')
    return send_file(gate.render_ticket(reservation), mimetype='image/png')


# -------------------------
# Authority
# -------------------------
@bp.route('/api/authority/lots', methods=['GET', 'POST'])
@authority_required
def authority_lots():
    user = current_user()
    if request.method == 'POST':
        data = _json_body()
        lot = inventory.create_lot(
            user,
            name=data.get('name'),
            address=data.get('address'),
            latitude=data.get('lat', data.get('latitude')),
            longitude=data.get('lng', data.get('longitude')),
            total_spots=data.get('total_spots'),
            price_per_hour=data.get('price_per_hour'),
            available_spots=data.get('available_spots'),
        )
        return jsonify({'status': 'success', 'lot': lot.to_dict()}), 201

    lots = ParkingLot.query.filter_by(manager_id=user.id).order_by(ParkingLot.id).all()
    return jsonify([lot.to_dict() for lot in lots])


@bp.route('/api/authority/lots/<int:lot_id>/spots', methods=['POST'])
@authority_required
def authority_adjust_spots(lot_id):
    data = _json_body()
    try:
        delta = int(data.get('delta'))
    except (TypeError, ValueError):
        raise ValidationError('delta must be +1 or -1')
    available = inventory.adjust_spots(lot_id, current_user(), delta)
    return jsonify({'status': 'success', 'lot_id': lot_id, 'available_spots': available})


@bp.route('/api/authority/reservations')
@authority_required
def authority_reservations():
    statuses = request.args.getlist('status')
    items = reservations.list_reservations(manager_id=current_user().id, statuses=statuses or None)
    return jsonify([r.to_dict() for r in items])


@bp.route('/api/authority/summary')
@authority_required
def authority_summary():
    return jsonify(inventory.occupancy_summary(current_user().id))


@bp.route('/api/authority/scan/<kind>', methods=['POST'])
@authority_required
def authority_scan(kind):
    if kind not in ('entry', 'exit'):
        raise NotFoundError(f'Unknown scan type {kind}')
    data = _json_body()
    booking_id, lot_id = gate.parse_qr_payload(data.get('payload', data))

    scan = gate.scan_entry if kind == 'entry' else gate.scan_exit
    reservation = scan(booking_id, lot_id=lot_id, operator=current_user())
    return jsonify({'status': 'success', 'reservation': reservation.to_dict()})


# -------------------------
# CLI
# -------------------------
def register_commands(app):
    @app.cli.command('init-db')
    def init_db_command():
        db.create_all()
        click.echo('Initialized the database.')

    @app.cli.command('create-authority')
    @click.argument('username')
    @click.password_option()
    def create_authority_command(username, password):
        if User.query.filter_by(username=username).first():
            raise click.ClickException(f'User {username} already exists')
        db.session.add(User(username=username, password=generate_password_hash(password), role=ROLE_AUTHORITY))
        db.session.commit()
        click.echo(f'Created authority account {username}.')

    @app.cli.command('expire-reservations')
    def expire_reservations_command():
        result = reservations.expire_stale_reservations()
        click.echo(f"Activated {len(result['activated'])}, expired {len(result['expired'])} reservations.")


def create_app(config_object=Config):
    app = Flask(__name__)
    app.config.from_object(config_object)

    logging.basicConfig(
        level=app.config['LOG_LEVEL'],
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )

    db.init_app(app)
    register_error_handlers(app)
    register_commands(app)
    app.register_blueprint(bp)
    socketio.init_app(app, cors_allowed_origins=app.config['SOCKETIO_CORS_ORIGINS'])

    with app.app_context():
        db.create_all()
    return app


if __name__ == '__main__':
    app = create_app()
    socketio.run(app, debug=True, allow_unsafe_werkzeug=True)
