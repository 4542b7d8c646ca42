class VendorPipelineError(Exception):
    """Base class for all vendor-pipeline domain exceptions.

    Every custom exception in this module inherits from here so that a
    single ``except VendorPipelineError`` clause can catch any domain
    error.
    """

    def __init__(self, detail: str = "An error occurred"):
        self.detail = detail
        super().__init__(detail)


class LeadNotFoundError(VendorPipelineError):
    """Raised when a requested vendor lead does not exist."""

    def __init__(self, detail: str = "Vendor lead not found"):
        super().__init__(detail)


class DuplicateLeadError(VendorPipelineError):
    """Raised when a lead with the same phone or external id already exists."""

    def __init__(self, detail: str = "Duplicate vendor lead detected"):
        super().__init__(detail)


class InvalidStageTransitionError(VendorPipelineError):
    """Raised when a stage change is not an edge of the pipeline graph."""

    def __init__(self, detail: str = "Invalid pipeline stage transition"):
        super().__init__(detail)


class CollaboratorUnavailableError(VendorPipelineError):
    """Raised when messaging, inference, valuation or intake fails or times out.

    Always recoverable: the orchestrator skips the lead for the current
    cycle and picks it up again on the next one.
    """

    def __init__(self, detail: str = "External collaborator unavailable"):
        super().__init__(detail)


class ConcurrentUpdateError(VendorPipelineError):
    """Raised when a lead changed between read and conditional write."""

    def __init__(self, detail: str = "Lead was modified concurrently"):
        super().__init__(detail)


class ImmutableMessageError(VendorPipelineError):
    """Raised on any attempt to modify a stored SMS message."""

    def __init__(self, detail: str = "SMS messages are append-only"):
        super().__init__(detail)


class OfferCalculationError(VendorPipelineError):
    """Raised when an offer cannot be priced (missing market value or price)."""

    def __init__(self, detail: str = "Offer cannot be calculated"):
        super().__init__(detail)


class InvalidWebhookSignatureError(VendorPipelineError):
    """Raised when an inbound webhook fails signature validation."""

    def __init__(self, detail: str = "Invalid webhook signature"):
        super().__init__(detail)
