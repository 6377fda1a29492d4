"""Error taxonomy shared by the orchestrator, the routes and the webhook ingress."""

from typing import Optional


class PreviewError(Exception):
    """Base class for every error the orchestrator raises on purpose."""


class QuotaExceeded(PreviewError):
    """The account's tier does not allow one more of `resource`."""

    def __init__(self, resource: str, limit: float, tier: str):
        self.resource = resource
        self.limit = limit
        self.tier = tier
        super().__init__(f"Tier {tier} allows max {format_limit(limit)} {resource}")

    @property
    def code(self) -> str:
        return f"{self.resource.upper().replace(' ', '_')}_QUOTA_EXCEEDED"


class FetchFailed(PreviewError):
    """The repository could not be cloned or the ref could not be checked out."""


class _ToolchainError(PreviewError):
    def __init__(self, message: str, logs: str = ""):
        self.logs = logs
        super().__init__(message)


class BuildFailed(_ToolchainError):
    """The container image could not be built."""


class RunFailed(_ToolchainError):
    """The image was built but the container could not be started."""


class SignatureInvalid(PreviewError):
    """A webhook delivery failed HMAC verification."""


class NotFound(PreviewError):
    pass


class Forbidden(PreviewError):
    pass


def format_limit(limit: Optional[float]) -> str:
    if limit is None or limit == float("inf"):
        return "unlimited"
    return str(int(limit))
