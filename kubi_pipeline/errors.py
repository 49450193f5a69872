"""Exception types shared across the pipeline"""


class PipelineError(Exception):
    """Base exception for pipeline errors"""
    pass


class ConfigurationError(PipelineError):
    """Required configuration is missing or invalid. Halts startup."""
    pass


class TransientRpcError(PipelineError):
    """Timeout, connection reset or rate limit. Safe to retry on another endpoint."""
    pass


class RpcResponseError(PipelineError):
    """Malformed response or JSON-RPC error object. Not retried."""
    pass


class RebaseSkipped(PipelineError):
    """A token was deliberately not rebased this run."""
    pass


class TransactionFailed(PipelineError):
    """A submitted transaction reverted or was not mined in time."""
    pass
