"""Error taxonomy shared by every service layer.

Four families, mirroring how failures are surfaced to users:

- InvalidRequestError: bad input or missing session, the operation is never attempted
- UpstreamError: storage, extraction or export collaborators failed
- PreconditionError: the invoice is in the wrong state for the requested operation
- NotFoundError: the record does not exist or belongs to another user

Partial failures (some field writes failing after an extraction) are not
exceptions; they are reported as per-item results.
"""


class InvoiceHubError(Exception):
    """Base class for all platform errors."""


# Invalid requests


class InvalidRequestError(InvoiceHubError):
    """Input rejected before any work is done."""


class UnsupportedFileTypeError(InvalidRequestError):
    def __init__(self, content_type: str | None) -> None:
        self.content_type = content_type
        super().__init__(
            f"Unsupported file type: {content_type}. Only PDF, JPEG and PNG are accepted."
        )


class FileTooLargeError(InvalidRequestError):
    def __init__(self, size: int, max_size: int) -> None:
        self.size = size
        self.max_size = max_size
        super().__init__(
            f"File is too large ({size / 1024 / 1024:.2f}MB). "
            f"Maximum size: {max_size // 1024 // 1024}MB"
        )


class EmptyFileError(InvalidRequestError):
    def __init__(self) -> None:
        super().__init__("Empty file")


class MissingSessionError(InvalidRequestError):
    def __init__(self) -> None:
        super().__init__("You must be signed in to perform this operation")


class InvalidSchemaError(InvalidRequestError):
    """Extraction template schema is malformed."""


class InvalidAmountError(InvalidRequestError):
    def __init__(self, field: str, value: object) -> None:
        self.field = field
        super().__init__(f"{field} must be non-negative, got {value}")


# Upstream failures


class UpstreamError(InvoiceHubError):
    """An external collaborator failed."""


class StorageError(UpstreamError):
    pass


class ExtractionError(UpstreamError):
    pass


class ExportError(UpstreamError):
    pass


# Preconditions


class PreconditionError(InvoiceHubError):
    """Operation not allowed in the current invoice state."""


class InvalidTransitionError(PreconditionError):
    def __init__(self, status: str, action: str, reason: str | None = None) -> None:
        self.status = status
        self.action = action
        message = f"Cannot {action} an invoice with status '{status}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class DocumentNotFoundError(PreconditionError):
    def __init__(self, path: str | None) -> None:
        self.path = path
        super().__init__(f"File not found: {path}" if path else "No document attached")


class MissingRequiredFieldsError(PreconditionError):
    def __init__(self, missing: list[str]) -> None:
        self.missing = missing
        super().__init__(f"Missing required fields: {', '.join(missing)}")


class ConcurrentModificationError(PreconditionError):
    def __init__(self, invoice_id: str) -> None:
        self.invoice_id = invoice_id
        super().__init__(f"Invoice {invoice_id} was modified by another analysis")


# Lookups


class NotFoundError(InvoiceHubError):
    pass


class InvoiceNotFoundError(NotFoundError):
    def __init__(self, invoice_id: str) -> None:
        self.invoice_id = invoice_id
        super().__init__(f"Invoice {invoice_id} not found")


class TemplateNotFoundError(NotFoundError):
    def __init__(self, template_id: str) -> None:
        self.template_id = template_id
        super().__init__(f"Extraction template {template_id} not found")
