class ExporterError(RuntimeError):
    """Base class for all errors raised by the exporter."""


class ConfigurationError(ExporterError):
    """Settings or the target list are invalid."""


class SpawnFailure(ExporterError):
    """
    The prober binary cannot be started (missing, not executable, or not a
    usable fping). Retrying does not help, so this is always fatal.
    """


class RestartBudgetExhausted(ExporterError):
    """The prober kept exiting and the maximum number of restarts was used up."""


class RenderError(ExporterError):
    """A registry snapshot could not be rendered into the exposition format."""
