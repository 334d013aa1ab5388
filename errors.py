"""Error taxonomy shared by the store, sync engine, orchestrator and tools."""


class RagChatError(Exception):
    """Base class. ``status`` and ``code`` are what the tool layer reports."""

    status = "error"
    code = 500

    def to_dict(self) -> dict:
        return {"success": False, "status": self.status, "code": self.code, "error": str(self)}


class ValidationError(RagChatError):
    status = "invalid"
    code = 400


class ProviderError(RagChatError):
    status = "provider_error"
    code = 502


class EmbeddingError(ProviderError):
    pass


class CompletionError(ProviderError):
    pass


class RemoteStoreError(RagChatError):
    status = "remote_error"
    code = 502


class RemoteStoreUnavailable(RemoteStoreError):
    status = "unavailable"
    code = 503


class RemoteIndexNotFound(RemoteStoreError):
    status = "not_found"
    code = 404


class ConcurrentOperationRejected(RagChatError):
    status = "locked"
    code = 409

    def __init__(self, requested: str, current: str):
        super().__init__(f"Cannot start {requested}: {current} operation already in progress")
        self.requested = requested
        self.current = current


class VectorQueryDegraded(RagChatError):
    """Raised inside the memory store when the vector path fails; never leaves it."""

    status = "degraded"
    code = 500
