"""Error taxonomy shared by the services and the HTTP layer."""


class MarketplaceError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(MarketplaceError):
    status_code = 400


class NotFound(MarketplaceError):
    status_code = 404


class Conflict(MarketplaceError):
    status_code = 400


class UploadTooLarge(MarketplaceError):
    status_code = 400


class Unauthorized(MarketplaceError):
    status_code = 401


class InsufficientStock(MarketplaceError):
    status_code = 409

    def __init__(self, product_id: str, requested: int):
        super().__init__(f"Insufficient stock for product {product_id}")
        self.product_id = product_id
        self.requested = requested


class StoreUnavailable(MarketplaceError):
    status_code = 503
