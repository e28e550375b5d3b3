class BtweenError(Exception):
    status_code = 500
    kind = "error"

    def __init__(self, message=None):
        super().__init__(message or self.__class__.__doc__)
        self.message = message or self.__class__.__doc__

    def to_dict(self):
        return {"msg": self.message, "error": self.kind}


class ValidationError(BtweenError):
    """Invalid request"""
    status_code = 400
    kind = "validation_error"


class InvalidKeyError(ValidationError):
    """Malformed key material"""
    kind = "invalid_key"


class AuthenticationError(BtweenError):
    """Invalid credentials"""
    status_code = 401
    kind = "authentication_error"


class ForbiddenError(BtweenError):
    """Not a participant of this chat"""
    status_code = 403
    kind = "forbidden"


class NotFoundError(BtweenError):
    """Not found"""
    status_code = 404
    kind = "not_found"


class ConflictError(BtweenError):
    """Already exists"""
    status_code = 409
    kind = "conflict"


class PayloadTooLargeError(BtweenError):
    """File too large"""
    status_code = 413
    kind = "payload_too_large"


class UnsupportedMediaError(BtweenError):
    """Invalid file type. Only images and audio are allowed."""
    status_code = 415
    kind = "unsupported_media"


class PersistenceError(BtweenError):
    """Store unavailable"""
    status_code = 503
    kind = "persistence_error"


class DecryptionError(BtweenError):
    """Message could not be decrypted"""
    kind = "decryption_error"


class UpgradeRaceError(BtweenError):
    """Key backup was written concurrently"""
    status_code = 409
    kind = "upgrade_race"
