"""Error taxonomy shared by the router components."""


class RouterError(Exception):
    """Base class for every error raised by the router."""


class ConfigInvariantError(RouterError):
    """A routing table references a model that is not defined. Fatal at startup."""

    def __init__(self, errors):
        self.errors = list(errors)
        super().__init__("Config validation failed:\n" + "\n".join(self.errors))


class BodyParseError(RouterError):
    """Inbound request body is not valid JSON."""


class UnresolvedRouteError(RouterError):
    """No routing rule matched the request."""


class UpstreamError(RouterError):
    """The forward call to the backend failed."""
