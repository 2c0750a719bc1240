"""Fuel injection policy.

The fuel manager decides how much budget a partition gets and whether the
engine suspends its call after a fixed sub-quantum:
- `none`: no forced suspension. The call runs until it completes or the
  budget is exhausted (a fuel-exhaustion failure, never a yield).
- `fixed_quantum(n)`: the engine suspends the call every `n` fuel units, so
  the scheduler regains control within a bounded amount of guest work.

It is a policy object. Fuel itself lives in the partition's engine context.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from fuelsched.errors import ConfigError
from fuelsched.executor.partition import Partition

NONE = "none"
FIXED_QUANTUM = "fixed_quantum"

# Defaults of the fib demo host.
DEFAULT_FUEL_BUDGET = 10_000_000
DEFAULT_YIELD_AFTER = 100


@dataclass(frozen=True)
class FuelPolicy:
    mode: str = NONE
    quantum: int | None = None

    def __post_init__(self) -> None:
        if self.mode == NONE:
            if self.quantum is not None:
                raise ConfigError("Fuel policy 'none' does not take a quantum")
        elif self.mode == FIXED_QUANTUM:
            # bool is an int subclass; True is not a quantum.
            if isinstance(self.quantum, bool) or not isinstance(self.quantum, int) or self.quantum < 1:
                raise ConfigError(f"Fuel policy 'fixed_quantum' requires a quantum >= 1 (got {self.quantum!r})")
        else:
            raise ConfigError(f"Unknown fuel policy: {self.mode}")

    @classmethod
    def none(cls) -> "FuelPolicy":
        return cls(mode=NONE)

    @classmethod
    def fixed_quantum(cls, n: int) -> "FuelPolicy":
        return cls(mode=FIXED_QUANTUM, quantum=n)

    @classmethod
    def parse(cls, mode: str, quantum: int | None = None, *, default_quantum: int = DEFAULT_YIELD_AFTER) -> "FuelPolicy":
        if mode == FIXED_QUANTUM:
            return cls.fixed_quantum(quantum if quantum is not None else default_quantum)
        if mode == NONE:
            return cls.none()
        raise ConfigError(f"Unknown fuel policy: {mode}")

    def to_dict(self) -> dict[str, Any]:
        return {"policy": self.mode, "quantum": self.quantum}


@dataclass(frozen=True)
class FuelInjection:
    amount: int
    yield_after: int | None


class FuelManager:
    def __init__(self, *, budget: int = DEFAULT_FUEL_BUDGET, max_fuel: int | None = None, min_yield_after: int = 1):
        if budget < 0:
            raise ConfigError(f"Fuel budget must be non-negative (got {budget})")
        if max_fuel is not None and budget > max_fuel:
            raise ConfigError(f"Fuel budget {budget} exceeds max_fuel_per_injection ({max_fuel})")
        self.budget = budget
        self.max_fuel = max_fuel
        self.min_yield_after = min_yield_after

    def compute_next_injection(self, remaining: int, policy: FuelPolicy, *, budget: int | None = None) -> FuelInjection:
        """Top the budget up to the target without shrinking what is left."""
        target = self.budget if budget is None else budget
        if target < 0:
            raise ConfigError(f"Fuel budget must be non-negative (got {target})")

        amount = max(remaining, target)
        if self.max_fuel is not None:
            amount = min(amount, self.max_fuel)

        if policy.mode == FIXED_QUANTUM:
            if policy.quantum < self.min_yield_after:
                raise ConfigError(f"Yield quantum {policy.quantum} is below min_yield_after ({self.min_yield_after})")
            return FuelInjection(amount=amount, yield_after=policy.quantum)
        return FuelInjection(amount=amount, yield_after=None)

    def inject(self, partition: Partition, policy: FuelPolicy, *, budget: int | None = None) -> FuelInjection:
        remaining = partition.fuel_remaining() or 0
        injection = self.compute_next_injection(remaining, policy, budget=budget)
        partition.inject_fuel(injection.amount, injection.yield_after)
        return injection
