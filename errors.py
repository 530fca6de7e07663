class ServiceError(ValueError):
    """A business-rule or validation failure reported to the client as a 400."""


class InvalidInput(ServiceError):
    pass


class NotFound(ServiceError):
    pass


class Conflict(ServiceError):
    pass
