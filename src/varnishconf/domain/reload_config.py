import threading
import time
from collections.abc import Mapping
from dataclasses import dataclass, field, replace

ParameterValue = str | int | float | bool


@dataclass(frozen=True)
class VclUnit:
    name: str
    source_path: str
    dest_path: str
    is_top: bool = False
    generated_id: str = ""

    def __post_init__(self) -> None:
        if not self.name or any(ch.isspace() for ch in self.name):
            raise ValueError(f"VCL unit name must be a non-empty word, got {self.name!r}")
        if not self.dest_path:
            raise ValueError(f"VCL unit '{self.name}' requires a destination path")

    def stamped(self, generation: int) -> "VclUnit":
        return replace(self, generated_id=f"{self.name}_{generation}")


@dataclass(frozen=True)
class ReloadConfig:
    units: tuple[VclUnit, ...] = ()
    parameters: Mapping[str, ParameterValue] = field(default_factory=dict)
    first_start: bool = False
    generation: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "units", tuple(self.units))
        object.__setattr__(self, "parameters", dict(self.parameters))

        if self.units:
            tops = [unit for unit in self.units if unit.is_top]
            if len(tops) != 1:
                raise ValueError(f"Exactly one VCL unit must be marked top, found {len(tops)}")

            names = [unit.name for unit in self.units]
            duplicates = sorted({name for name in names if names.count(name) > 1})
            if duplicates:
                raise ValueError(f"Duplicate VCL unit names: {', '.join(duplicates)}")

        for name in self.parameters:
            if not name or any(ch.isspace() for ch in name):
                raise ValueError(f"Invalid parameter name {name!r}")

    @property
    def top(self) -> VclUnit | None:
        return next((unit for unit in self.units if unit.is_top), None)

    @property
    def is_stamped(self) -> bool:
        return all(unit.generated_id for unit in self.units)

    def stamped(self, generation: int) -> "ReloadConfig":
        return replace(
            self,
            units=tuple(unit.stamped(generation) for unit in self.units),
            generation=generation,
        )

    def for_first_start(self) -> "ReloadConfig":
        return replace(self, first_start=True)


class GenerationClock:
    """Strictly increasing millisecond timestamps used to version VCL units."""

    def __init__(self) -> None:
        self._last = 0
        self._lock = threading.Lock()

    def next(self) -> int:
        with self._lock:
            now = int(time.time() * 1000)
            self._last = max(now, self._last + 1)
            return self._last
