"""Exception types shared across the reconstruction pipeline."""


class ReconError(Exception):
    """Base class for pipeline errors."""


class UpstreamError(ReconError):
    """An external fetch (feed, RPC, chain lookup) failed. Always retryable."""


class HeliusError(UpstreamError):
    pass


class FeedError(UpstreamError):
    pass


class DecodeError(ReconError):
    """A transaction could not be decoded at all (malformed message)."""


class WorkflowError(ReconError):
    """A round workflow step was requested before its precondition held."""


class RoundNotFound(ReconError):
    def __init__(self, round_id: int):
        super().__init__(f"Round {round_id} not found")
        self.round_id = round_id


class ConflictError(ReconError):
    """The requested operation conflicts with work already in progress."""
