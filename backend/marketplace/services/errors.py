class MarketplaceError(ValueError):
    """Base class for user-visible marketplace errors."""

    kind = "error"
    status_code = 400

    def public_message(self) -> str:
        return str(self)


class MarketplaceValidationError(MarketplaceError):
    kind = "validation_error"
    status_code = 400


class MarketplaceAuthorizationError(MarketplaceError):
    kind = "authorization_error"
    status_code = 403


class MarketplaceNotFoundError(MarketplaceError):
    kind = "not_found"
    status_code = 404


class MarketplaceConflictError(MarketplaceError):
    kind = "conflict"
    status_code = 409


class PaymentGatewayError(MarketplaceError):
    """The payment gateway call failed; the underlying detail is never shown to callers."""

    kind = "gateway_error"
    status_code = 502

    def public_message(self) -> str:
        return "Payment gateway request failed"


class WebhookSignatureError(PaymentGatewayError):
    status_code = 400

    def public_message(self) -> str:
        return "Webhook signature verification failed"
