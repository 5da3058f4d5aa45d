"""Exception hierarchy for the document review pipeline.

``PipelineError`` subclasses are hard processing failures that move a
document to FAILED. ``OCRWorkflowError`` subclasses are rejections of a
reviewer action; they never change stored state.
"""


class PipelineError(Exception):
    """Unrecoverable technical failure while processing a document."""


class ImageDecodeError(PipelineError):
    """The uploaded bytes could not be decoded into an image."""


class OCREngineError(PipelineError):
    """The OCR engine failed to recognize the document."""


class EngineTimeoutError(OCREngineError):
    """The OCR engine did not answer within the configured timeout."""


class OCRWorkflowError(Exception):
    """Base class for rejected workflow actions."""


class DocumentNotFoundError(OCRWorkflowError):
    """No OCR record exists for the given id (and owner)."""


class InvalidTransitionError(OCRWorkflowError):
    """The requested action is not legal from the record's current status."""


class DuplicateConflictError(OCRWorkflowError):
    """Approval blocked because the document is a probable duplicate."""


class MaterializationConflictError(OCRWorkflowError):
    """A financial record is already linked, or being created, for the document."""


class DeletionConflictError(OCRWorkflowError):
    """The record is linked to a financial record and cannot be deleted."""


class MaterializationError(OCRWorkflowError):
    """The approved data could not be turned into a financial record."""


class UploadValidationError(OCRWorkflowError):
    """The uploaded file was rejected before processing."""
