"""Postmortem workflow exceptions."""


class PostmortemError(Exception):
    """Base exception for postmortem operations."""

    pass


class IncidentNotFoundError(PostmortemError):
    """The referenced incident does not exist."""

    def __init__(self, incident_id: str):
        self.incident_id = incident_id
        super().__init__(f"Incident {incident_id} not found")


class PostmortemNotFoundError(PostmortemError):
    """No postmortem exists for the incident (or id)."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Postmortem for {key} not found")


class InvalidIncidentStateError(PostmortemError):
    """The incident is not in a state that allows the operation."""

    def __init__(self, incident_id: str, status: str, message: str | None = None):
        self.incident_id = incident_id
        self.status = status
        super().__init__(
            message
            or f"Postmortem can only be generated for resolved or closed incidents "
            f"(incident {incident_id} is '{status}')"
        )


class InvalidStatusTransitionError(PostmortemError):
    """A status change that the postmortem lifecycle does not allow."""

    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot change postmortem status from '{current}' to '{requested}'")


class GenerationStageError(PostmortemError):
    """A generation stage failed; earlier stages stay persisted.

    The provider error is preserved as ``__cause__``.
    """

    def __init__(self, stage: str, provider: str, message: str):
        self.stage = stage
        self.provider = provider
        super().__init__(f"Stage '{stage}' failed ({provider}): {message}")
