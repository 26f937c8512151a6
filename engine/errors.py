"""Exceptions raised by the campaign engine.

Per-request send failures are never raised: they become failed SendOutcomes
at the dispatcher boundary. Only the classes below cross module boundaries.
"""


class CampaignError(Exception):
    """Base class for campaign errors."""


class CampaignConfigError(CampaignError):
    """Fatal configuration problem found before any batch is dispatched."""


class CampaignHalted(CampaignError):
    """The run stopped before the size target; progress is saved and a restart resumes."""


class CampaignStalled(CampaignHalted):
    """Too many consecutive batches produced no successful send."""

    def __init__(self, phase: str, empty_batches: int, last_error: str = None):
        self.phase = phase
        self.empty_batches = empty_batches
        self.last_error = last_error
        msg = f"{empty_batches} consecutive batches without a successful send in stage '{phase}'"
        if last_error:
            msg += f" (last error: {last_error})"
        super().__init__(msg)


class CampaignExhausted(CampaignHalted):
    """No further work can be generated while the size target is still unmet."""

    def __init__(self, phase: str, reason: str, estimated_bytes: int, target_bytes: int):
        self.phase = phase
        self.reason = reason
        self.estimated_bytes = estimated_bytes
        self.target_bytes = target_bytes
        super().__init__(
            f"Stage '{phase}' ran out of work at {estimated_bytes}/{target_bytes} estimated bytes: {reason}"
        )


class StateStoreError(CampaignError):
    """Persisted state could not be read or written."""
