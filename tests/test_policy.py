import pytest

from fuelsched.errors import ConfigError
from fuelsched.executor.policy import FIXED_QUANTUM, NONE, FuelInjection, FuelManager, FuelPolicy


class TestFuelPolicy:
    def test_none_takes_no_quantum(self):
        assert FuelPolicy.none().quantum is None
        with pytest.raises(ConfigError):
            FuelPolicy(mode=NONE, quantum=5)

    @pytest.mark.parametrize("quantum", [0, -1, None, True, 2.5])
    def test_fixed_quantum_requires_positive_quantum(self, quantum):
        with pytest.raises(ConfigError):
            FuelPolicy(mode=FIXED_QUANTUM, quantum=quantum)

    def test_unknown_mode(self):
        with pytest.raises(ConfigError):
            FuelPolicy.parse("round_robin")

    def test_parse_uses_default_quantum(self):
        assert FuelPolicy.parse(FIXED_QUANTUM, default_quantum=42) == FuelPolicy.fixed_quantum(42)
        assert FuelPolicy.parse(NONE, 7) == FuelPolicy.none()


class TestComputeNextInjection:
    def test_none_policy_has_no_yield_interval(self):
        mgr = FuelManager(budget=10_000_000)
        assert mgr.compute_next_injection(0, FuelPolicy.none()) == FuelInjection(amount=10_000_000, yield_after=None)

    def test_fixed_quantum_sets_yield_interval(self):
        mgr = FuelManager(budget=10_000_000)
        injection = mgr.compute_next_injection(0, FuelPolicy.fixed_quantum(100))
        assert injection == FuelInjection(amount=10_000_000, yield_after=100)

    def test_never_shrinks_remaining_fuel(self):
        mgr = FuelManager(budget=1_000)
        assert mgr.compute_next_injection(5_000, FuelPolicy.none()).amount == 5_000

    def test_budget_override(self):
        mgr = FuelManager(budget=1_000)
        assert mgr.compute_next_injection(0, FuelPolicy.none(), budget=250).amount == 250

    def test_capped_by_max_fuel(self):
        mgr = FuelManager(budget=1_000, max_fuel=2_000)
        assert mgr.compute_next_injection(9_000, FuelPolicy.none()).amount == 2_000

    def test_quantum_below_minimum_is_rejected(self):
        mgr = FuelManager(budget=1_000, min_yield_after=10)
        with pytest.raises(ConfigError):
            mgr.compute_next_injection(0, FuelPolicy.fixed_quantum(5))

    def test_budget_above_max_fuel_is_rejected(self):
        with pytest.raises(ConfigError):
            FuelManager(budget=10, max_fuel=5)


def test_inject_applies_to_partition(engine, make_module):
    from fuelsched.executor.partition import Partition

    p = Partition.load(engine, 0, make_module(fuel_cost=100))
    mgr = FuelManager(budget=1_000)

    injection = mgr.inject(p, FuelPolicy.fixed_quantum(25))

    assert injection.amount == 1_000
    assert p.fuel_remaining() == 1_000
    assert p.yield_after == 25
