"""
Error kinds reported by the volume layer and the propagation engine.

Every exception carries a ``kind`` string so callers (CLI, GUI) can report a
single failure kind without matching on class names.
"""


class PropagationError(Exception):
    """Base class for all reported failure kinds."""

    kind = "PropagationError"


class IndexOutOfRange(PropagationError, IndexError):
    """Explicit slice access outside the volume."""

    kind = "IndexOutOfRange"


class ChainWidthMismatch(PropagationError, ValueError):
    """Starting chain does not have the declared number of particles."""

    kind = "ChainWidthMismatch"

    def __init__(self, expected: int, actual: int):
        super().__init__(
            f"Starting chain length does not match expected chain length "
            f"(expected: {expected}, actual: {actual})"
        )
        self.expected = expected
        self.actual = actual


class InsufficientData(PropagationError, ValueError):
    """Seed or volume cannot support a single propagation step."""

    kind = "InsufficientData"


class InvalidTarget(PropagationError, ValueError):
    """Target slice is not after the starting slice."""

    kind = "InvalidTarget"


class NoCandidateFound(PropagationError):
    """A particle found no valid next position. Never aborts a run."""

    kind = "NoCandidateFound"

    def __init__(self, particle: int, reason: str):
        super().__init__(f"Particle {particle}: {reason}")
        self.particle = particle
        self.reason = reason


class CacheOverBudget(PropagationError, AssertionError):
    """Slice cache exceeded its byte budget. Indicates a defect."""

    kind = "CacheOverBudget"
