from dataclasses import dataclass, field
from time import time


@dataclass(frozen=True)
class DomainEvent:
    timestamp: float = field(default_factory=time)


@dataclass(frozen=True)
class ReloadTriggered(DomainEvent):
    label: str = ""
    coalesced: bool = False


@dataclass(frozen=True)
class ReloadSucceeded(DomainEvent):
    label: str = ""
    generation: int = 0
    duration_seconds: float = 0.0


@dataclass(frozen=True)
class ReloadFailed(DomainEvent):
    label: str = ""
    generation: int = 0
    step: str = ""
    error: str = ""
