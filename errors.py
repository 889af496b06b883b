"""Error taxonomy shared by the HTTP API and the approval console."""


class KaboretechError(Exception):
    """Base class for domain errors."""


class ValidationError(KaboretechError):
    """Malformed input: callback identifier, request body, missing field."""


class InvalidKey(ValidationError):
    """(domain, part) is not part of the training catalog."""


class NotFoundError(KaboretechError):
    pass


class AlreadyInState(KaboretechError):
    """The entitlement already holds the requested value."""


class ChannelUnavailable(KaboretechError):
    """The notification channel could not deliver a message."""


class StoreError(KaboretechError):
    """Persistence failure."""
