class OptimizerError(Exception):
    """Base class for image optimizer errors."""


class PreflightError(OptimizerError):
    """A condition that stops the run before any job is dispatched."""


class ToolDeclined(OptimizerError):
    """The external tool refused to write output because it could not shrink the file."""
