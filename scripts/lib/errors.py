"""
Error types for PEAK CRM.
Every error carries a machine-readable code and a details dict so routers
can translate it into an HTTP response without string matching.

Hierarchy:
    CRMError
    ├── APIError
    │   ├── APIRateLimitError
    │   ├── CircuitOpenError
    │   └── IntegrationError
    │       ├── IntegrationNotConfiguredError
    │       ├── MondayAPIError
    │       ├── SharePointAPIError
    │       └── SlackAPIError
    ├── DataError
    │   ├── ConfigError
    │   ├── DataFetchError
    │   └── NotFoundError
    └── PipelineError
        ├── InvalidStageError
        ├── StageTransitionError
        ├── StageGateError
        └── ConversionError
"""


class CRMError(Exception):
    """Base exception for all PEAK CRM errors."""

    def __init__(self, message: str, code: str = "UNKNOWN", details: dict = None):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(f"[{code}] {message}")

    def to_dict(self) -> dict:
        """Body for an HTTPException detail."""
        return {"message": self.message, "code": self.code, **self.details}


# --- API Errors ---

class APIError(CRMError):
    """Base class for errors talking to an external API."""

    def __init__(self, message: str, code: str = "API_ERROR",
                 status_code: int = None, url: str = None, **kwargs):
        self.status_code = status_code
        self.url = url
        details = {"status_code": status_code, "url": url, **kwargs}
        super().__init__(message, code=code, details=details)


class APIRateLimitError(APIError):
    """Vendor rate limit hit."""

    def __init__(self, url: str, retry_after: int = None):
        msg = f"Rate limit exceeded: {url}"
        if retry_after:
            msg += f" (retry after {retry_after}s)"
        super().__init__(
            msg, code="API_RATE_LIMIT", url=url, retry_after=retry_after,
        )


class CircuitOpenError(APIError):
    """Circuit breaker is open for a service."""

    def __init__(self, service: str, failures: int, reset_time: float):
        super().__init__(
            f"Circuit open for '{service}' after {failures} failures. "
            f"Resets in {reset_time:.0f}s.",
            code="CIRCUIT_OPEN", service=service,
        )


class IntegrationError(APIError):
    """Base class for Monday.com / SharePoint / Slack failures."""

    integration = "integration"

    def __init__(self, message: str, status_code: int = None,
                 code: str = "INTEGRATION_ERROR", **kwargs):
        super().__init__(
            message, code=code, status_code=status_code,
            integration=self.integration, **kwargs,
        )


class IntegrationNotConfiguredError(IntegrationError):
    """No credentials stored or supplied for an integration."""

    def __init__(self, integration: str):
        self.integration = integration
        super().__init__(
            f"{integration} integration is not configured",
            code="INTEGRATION_NOT_CONFIGURED",
        )


class MondayAPIError(IntegrationError):
    """Monday.com GraphQL error or HTTP failure."""

    integration = "monday"

    def __init__(self, message: str, status_code: int = None, errors: list = None):
        super().__init__(
            message, status_code=status_code, code="MONDAY_ERROR",
            errors=errors or [],
        )


class SharePointAPIError(IntegrationError):
    """Microsoft Graph (SharePoint) error."""

    integration = "sharepoint"

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message, status_code=status_code, code="SHAREPOINT_ERROR")


class SlackAPIError(IntegrationError):
    """Slack Web API returned ok=false or an HTTP error."""

    integration = "slack"

    def __init__(self, message: str, status_code: int = None, slack_error: str = None):
        super().__init__(
            message, status_code=status_code, code="SLACK_ERROR",
            slack_error=slack_error,
        )


# --- Data Errors ---

class DataError(CRMError):
    """Base class for data and configuration errors."""
    pass


class ConfigError(DataError):
    """Configuration file or stored configuration is unusable."""

    def __init__(self, message: str, config_path: str = None, errors: list = None):
        super().__init__(
            message, code="CONFIG_ERROR",
            details={"config_path": config_path, "errors": errors or []},
        )


class DataFetchError(DataError):
    """Failed to read from or write to the store."""

    def __init__(self, message: str, source: str = None):
        super().__init__(
            message, code="DATA_FETCH_FAILED", details={"source": source},
        )


class NotFoundError(DataError):
    """Row does not exist in the caller's organization."""

    def __init__(self, resource: str, resource_id=None):
        super().__init__(
            f"{resource} not found",
            code="NOT_FOUND",
            details={"resource": resource, "id": resource_id},
        )


# --- Pipeline Errors ---

class PipelineError(CRMError):
    """Sales pipeline rule violated."""
    pass


class InvalidStageError(PipelineError):
    """Stage name is not one of the PEAK stages."""

    def __init__(self, stage: str):
        super().__init__(
            f"Invalid PEAK stage: '{stage}'",
            code="INVALID_STAGE", details={"stage": stage},
        )


class StageTransitionError(PipelineError):
    """Opportunity tried to skip a PEAK stage."""

    def __init__(self, current: str, target: str, allowed: list = None):
        super().__init__(
            f"Cannot move from '{current}' to '{target}'",
            code="INVALID_STAGE_TRANSITION",
            details={"current": current, "target": target, "allowed": allowed or []},
        )


class StageGateError(PipelineError):
    """MEDDPICC gate not met for a forward move."""

    def __init__(self, gate: str, unmet: list):
        super().__init__(
            f"Stage gate '{gate}' not met: {', '.join(unmet)}",
            code="STAGE_GATE_NOT_MET",
            details={"gate": gate, "unmet_criteria": unmet},
        )


class ConversionError(PipelineError):
    """Lead could not be converted."""

    def __init__(self, message: str, code: str = "CONVERSION_FAILED", **kwargs):
        super().__init__(message, code=code, details=kwargs)
