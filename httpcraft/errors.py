"""httpcraft errors - exception classes shared by the engines and the CLI."""


class HttpCraftError(Exception):
    """Base exception for all httpcraft errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConfigError(HttpCraftError):
    """An error loading the config file or selecting chains/profiles from it."""


class VariableResolutionError(HttpCraftError):
    """A {{...}} reference could not be resolved."""

    def __init__(self, message: str, variable_name: str):
        super().__init__(message)
        self.variable_name = variable_name


class OptionalVariableOmitted(VariableResolutionError):
    """An optional {{name?}} reference had no value.

    The request builder drops the header or query parameter holding it.
    """


class ChainLookupError(HttpCraftError):
    """A chain step's call names an unknown API or endpoint."""


class HttpStepError(HttpCraftError):
    """A response came back with a failing status code."""

    def __init__(self, status: int, status_text: str):
        super().__init__(f"HTTP {status} {status_text}".rstrip())
        self.status = status
        self.status_text = status_text


class TransportError(HttpCraftError):
    """The HTTP request could not be completed (DNS, connect, timeout)."""


class PluginError(HttpCraftError):
    """A plugin failed to load, or one of its hooks raised."""

    def __init__(self, message: str, plugin_name: str | None = None):
        super().__init__(message)
        self.plugin_name = plugin_name
