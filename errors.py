import logging

from flask import jsonify

log = logging.getLogger(__name__)


class ParkingError(Exception):
    """Base class for every error the booking service reports to a caller."""

    status_code = 400

    def __init__(self, message=None, **details):
        super().__init__(message or self.__class__.__doc__)
        self.message = message or self.__class__.__doc__
        self.details = details

    def to_dict(self):
        body = {
            'status': 'error',
            'error': self.__class__.__name__,
            'message': self.message,
        }
        body.update(self.details)
        return body


class ValidationError(ParkingError):
    """Malformed request"""
    status_code = 400


class AuthorizationError(ParkingError):
    """Not allowed to act on this resource"""
    status_code = 403


class NotFoundError(ParkingError):
    """Resource not found"""
    status_code = 404


class ConflictError(ParkingError):
    """Requested window overlaps an existing reservation"""
    status_code = 409

    def __init__(self, conflicting, message=None):
        super().__init__(
            message or self.__class__.__doc__,
            conflicting_reservation={
                'id': conflicting.id,
                'start_time': conflicting.start_time.isoformat(),
                'end_time': conflicting.end_time.isoformat(),
            },
        )
        self.conflicting = conflicting


class CapacityError(ParkingError):
    """No spot available in this lot, choose another lot"""
    status_code = 409


class InvalidStateError(ParkingError):
    """Reservation is not in a state that allows this operation"""
    status_code = 409


class AlreadyScannedError(ParkingError):
    """QR code was already scanned"""
    status_code = 409


class EntryNotScannedError(ParkingError):
    """Exit scanned before entry"""
    status_code = 409


class StaleReadError(ParkingError):
    """Could not verify existing reservations, booking rejected"""
    status_code = 503


class TransientNetworkError(ParkingError):
    """Upstream service temporarily unavailable, retry later"""
    status_code = 503


def register_error_handlers(app):
    @app.errorhandler(ParkingError)
    def handle_parking_error(error):
        if error.status_code >= 500:
            log.error('%s: %s', error.__class__.__name__, error.message)
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(404)
    def handle_not_found(error):
        return jsonify({'status': 'error', 'error': 'NotFound', 'message': 'Not found'}), 404

    @app.errorhandler(405)
    def handle_method_not_allowed(error):
        return jsonify({'status': 'error', 'error': 'MethodNotAllowed', 'message': 'Method not allowed'}), 405
