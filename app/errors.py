from fastapi import status


class LifecycleError(Exception):
    """Base class for rejected operations. Carries an HTTP status and a code."""

    status_code = status.HTTP_400_BAD_REQUEST
    code = "lifecycle_error"
    default_message = "Operation rejected"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationFailed(LifecycleError):
    code = "validation_failed"
    default_message = "Missing required fields"


class InvalidResponse(LifecycleError):
    code = "invalid_response"
    default_message = "Invalid response. Use 'yes' or 'no'."


class RequestClosed(LifecycleError):
    status_code = status.HTTP_409_CONFLICT
    code = "request_closed"
    default_message = "Request is already closed"


class AlreadyResponded(LifecycleError):
    status_code = status.HTTP_409_CONFLICT
    code = "already_responded"
    default_message = "You have already claimed/responded to this request"


class SelfDonation(LifecycleError):
    status_code = status.HTTP_409_CONFLICT
    code = "self_donation"
    default_message = "You cannot donate to your own request."


class InvalidTransition(LifecycleError):
    status_code = status.HTTP_409_CONFLICT
    code = "invalid_transition"
    default_message = "Request cannot move to that state"


class RequestChanged(LifecycleError):
    status_code = status.HTTP_409_CONFLICT
    code = "request_changed"
    default_message = "Request changed while processing, please retry"


class RequestNotFound(LifecycleError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "request_not_found"
    default_message = "Request not found"


class DonorNotFound(LifecycleError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "donor_not_found"
    default_message = "Donor is not assigned to this request"


class UserNotFound(LifecycleError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "user_not_found"
    default_message = "User not found"


class OfferNotFound(LifecycleError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "offer_not_found"
    default_message = "Offer not found"


class Forbidden(LifecycleError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "forbidden"
    default_message = "Not allowed"


class InvalidLink(LifecycleError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "invalid_link"
    default_message = "This link is invalid or was already used"
