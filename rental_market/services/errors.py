class MarketplaceError(RuntimeError):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(MarketplaceError):
    status_code = 404


class InvalidStateError(MarketplaceError):
    status_code = 409


class ForbiddenError(MarketplaceError):
    status_code = 403


class InsufficientBalanceError(MarketplaceError):
    status_code = 400


class ValidationError(MarketplaceError):
    status_code = 400


class PaymentGatewayError(MarketplaceError):
    status_code = 502
