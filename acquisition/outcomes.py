from dataclasses import dataclass

from acquisition.errors import ConfigurationError, PermanentJobError


@dataclass(frozen=True)
class Selected:
    winner: object
    candidate_count: int
    qualified_count: int
    match_method: str | None = None


@dataclass(frozen=True)
class NoQualifyingCandidate:
    reason: str
    candidate_count: int = 0


@dataclass(frozen=True)
class TransientError:
    error: Exception

    @property
    def message(self):
        return str(self.error) or self.error.__class__.__name__


@dataclass(frozen=True)
class FatalError:
    message: str
    public_message: str


def classify_exception(exc):
    """Map a search-step exception onto TransientError or FatalError."""
    if isinstance(exc, (ConfigurationError, PermanentJobError)):
        return FatalError(str(exc), exc.public_message)
    return TransientError(exc)
