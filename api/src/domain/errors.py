class ReconciliationError(Exception):
    ...


class MalformedPayload(ReconciliationError):
    ...


class AuthenticationFailure(ReconciliationError):
    ...


class UnknownPayment(ReconciliationError):
    ...


class IllegalTransition(ReconciliationError):
    ...


class GatewayUnreachable(ReconciliationError):
    ...


class PersistenceConflict(ReconciliationError):
    ...


class UnknownGateway(LookupError):
    ...


class PaymentDoesntExistError(Exception):
    ...


class ShopDoesntExistError(Exception):
    ...
