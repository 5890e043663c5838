"""
Exceptions raised by the MDR-TB risk prediction pipeline.

Halting conditions raise one of these; recoverable data-quality conditions
(unseen categories, unparseable numbers) are only logged.
"""


class PredictionError(Exception):
    """Base class for every halting pipeline error."""


class UpstreamDataError(PredictionError):
    """A DHIS2 / artifact fetch failed or returned a malformed payload."""


class SchemaMismatchError(PredictionError):
    """The scaler artifact does not cover every numeric column."""


class ModelLoadError(PredictionError):
    """The model artifact could not be loaded; prediction is disabled."""


class VectorAssemblyError(PredictionError):
    """A non-numeric value survived encoding and reached the tensor stage."""


class EmptyInputError(PredictionError, ValueError):
    """Aggregation or importance was asked to work on zero vectors."""


class PipelineBusyError(PredictionError):
    """A prediction run was started while another one is still in flight."""
