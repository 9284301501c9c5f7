"""
Replenishment engine errors

Run-level errors (configuration, unknown tenant, lock contention,
cancellation) abort a recompute. VariantDataError is raised for a single
variant and absorbed by the orchestrator into the skipped count.
"""


class RestockError(Exception):
    """Base exception for replenishment engine errors."""

    default_message = "Replenishment engine error"
    default_code = "restock_error"

    def __init__(self, message=None, code=None, details=None):
        self.message = message or self.default_message
        self.code = code or self.default_code
        self.details = details
        super().__init__(self.message)

    def __str__(self):
        return self.message

    def to_dict(self):
        """Convert the exception to a dictionary."""
        error_dict = {
            'error': self.message,
            'error_code': self.code,
        }
        if self.details:
            error_dict['details'] = self.details
        return error_dict


class ConfigurationError(RestockError):
    """Invalid window length, horizon or policy value."""
    default_message = "Configuration error"
    default_code = "configuration_error"


class TenantNotFoundError(RestockError):
    """The tenant does not exist or is inactive."""
    default_message = "Tenant not found"
    default_code = "tenant_not_found"


class RecomputeInProgressError(RestockError):
    """Another recompute (or repair) holds the tenant lock. Retry later."""
    default_message = "Recompute in progress"
    default_code = "recompute_in_progress"


class RecomputeCancelledError(RestockError):
    """The caller cancelled the run or its deadline passed before persistence."""
    default_message = "Recompute cancelled"
    default_code = "recompute_cancelled"


class VariantDataError(RestockError):
    """Malformed data for one variant; the variant is skipped."""
    default_message = "Malformed variant data"
    default_code = "variant_data_error"
