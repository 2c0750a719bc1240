"""Scheduler behaviour over the simulated engine.

Guest costs are chosen so slice counts are exact: a call that needs C fuel
under a yield interval n suspends ceil(C / n) - 1 times before completing.
"""

import itertools

import pytest

from fuelsched.errors import ConfigError, ConflictError, InstantiateError, InvalidIdError, LoadIOError, SlotOccupiedError
from fuelsched.executor.partition import COMPLETED, FAILED, YIELDED
from fuelsched.executor.policy import FuelPolicy
from fuelsched.executor.state_machine import IDLE, RELEASED, RETIRED
from fuelsched.scheduler.runner import REINVOKE, STOP_CANCELLED, STOP_MAX_CYCLES, STOP_NO_RUNNABLE

FIB_COST = 2650


def _load_pair(sched, make_module, *, cost_a=FIB_COST, cost_b=FIB_COST, policy_a=None, policy_b=None):
    sched.load_partition(0, make_module(fuel_cost=cost_a, results=[55]))
    sched.load_partition(1, make_module(fuel_cost=cost_b, results=[55]))
    sched.inject_fuel(0, policy_a or FuelPolicy.fixed_quantum(100))
    sched.inject_fuel(1, policy_b or FuelPolicy.none())


class TestSetup:
    def test_ring_is_sorted_loaded_ids(self, make_scheduler, make_module):
        sched = make_scheduler(max_partitions=3)
        sched.load_partition(2, make_module())
        sched.load_partition(0, make_module())
        assert sched.ring == [0, 2]
        assert sched.current_partition_id == 0

    def test_invalid_id_is_rejected_before_allocation(self, make_scheduler, make_module, engine):
        sched = make_scheduler()
        with pytest.raises(InvalidIdError):
            sched.load_partition(2, make_module())
        assert engine.live_contexts == 0

    def test_occupied_slot_is_rejected_and_first_survives(self, make_scheduler, make_module, engine):
        sched = make_scheduler()
        first = sched.load_partition(0, make_module(name="first"))
        with pytest.raises(SlotOccupiedError):
            sched.load_partition(0, make_module(name="second"))
        assert sched.registry.lookup(0) is first
        assert engine.live_contexts == 1

    def test_load_from_path(self, make_scheduler, make_module, tmp_path):
        module_path = tmp_path / "fib.guest.yaml"
        module_path.write_bytes(make_module())
        sched = make_scheduler()
        p = sched.load_partition(1, path=module_path, name="fib")
        assert p.name == "fib"
        assert sched.events.count_events(event_type="partition_loaded", partition_id=1) == 1

    def test_missing_module_file(self, make_scheduler, tmp_path):
        sched = make_scheduler()
        with pytest.raises(LoadIOError) as exc:
            sched.load_partition(0, path=tmp_path / "missing.guest.yaml")
        assert exc.value.partition_id == 0
        assert sched.events.count_events(event_type="partition_load_failed", partition_id=0) == 1
        assert sched.ring == []

    def test_requires_exactly_one_source(self, make_scheduler, make_module, tmp_path):
        sched = make_scheduler()
        with pytest.raises(ConfigError):
            sched.load_partition(0)
        with pytest.raises(ConfigError):
            sched.load_partition(0, make_module(), path=tmp_path / "x")

    def test_partition_set_is_fixed_once_running(self, make_scheduler, make_module):
        sched = make_scheduler()
        sched.load_partition(0, make_module())
        sched.inject_fuel(0)
        sched.step()
        with pytest.raises(ConflictError):
            sched.load_partition(1, make_module())

    def test_inject_remembers_policy(self, make_scheduler, make_module):
        sched = make_scheduler(budget=5_000, completion_policy=REINVOKE)
        sched.load_partition(0, make_module(fuel_cost=100))
        sched.inject_fuel(0, FuelPolicy.fixed_quantum(100))
        sched.run_partition(0)

        injection = sched.inject_fuel(0)

        assert injection.yield_after == 100
        assert injection.amount == 5_000
        assert sched.policy_for(0) == FuelPolicy.fixed_quantum(100)
        assert sched.events.count_events(event_type="fuel_injected", partition_id=0) == 2

    def test_inject_while_in_flight_is_rejected(self, make_scheduler, make_module):
        sched = make_scheduler()
        sched.load_partition(0, make_module(fuel_cost=1_000))
        sched.inject_fuel(0, FuelPolicy.fixed_quantum(100))
        sched.step()
        with pytest.raises(ConflictError):
            sched.inject_fuel(0)


class TestRoundRobin:
    def test_yielding_partitions_alternate(self, make_scheduler, make_module):
        sched = make_scheduler(max_partitions=3)
        for pid in range(3):
            sched.load_partition(pid, make_module(fuel_cost=10_000))
            sched.inject_fuel(pid, FuelPolicy.fixed_quantum(100))

        order = [sched.step().partition_id for _ in range(9)]

        assert order == [0, 1, 2] * 3

    def test_yield_count_matches_quantum(self, make_scheduler, make_module):
        sched = make_scheduler()
        sched.load_partition(0, make_module(fuel_cost=FIB_COST))
        sched.inject_fuel(0, FuelPolicy.fixed_quantum(100))

        summary = sched.run()

        assert summary.yielded == 26
        assert summary.completed == 1
        assert summary.stop_reason == STOP_NO_RUNNABLE

    def test_fuel_remaining_decreases_across_slices(self, make_scheduler, make_module):
        sched = make_scheduler(budget=10_000)
        sched.load_partition(0, make_module(fuel_cost=1_000))
        sched.inject_fuel(0, FuelPolicy.fixed_quantum(250))

        remaining = [sched.step().fuel_remaining for _ in range(4)]

        assert remaining == [9_750, 9_500, 9_250, 9_000]

    def test_run_partition_yield_does_not_rotate(self, make_scheduler, make_module):
        sched = make_scheduler()
        _load_pair(sched, make_module)
        sched.inject_fuel(1, FuelPolicy.fixed_quantum(100))

        result = sched.run_partition(1)

        assert result.status == YIELDED
        assert sched.current_partition_id == 0
        assert sched.ring == [0, 1]

    def test_run_partition_completion_retires(self, make_scheduler, make_module):
        sched = make_scheduler()
        _load_pair(sched, make_module)

        result = sched.run_partition(1)

        assert result.status == COMPLETED
        assert sched.ring == [0]
        assert sched.registry.lookup(1).state == RETIRED
        assert sched.step().partition_id == 0

    def test_run_partition_on_current_partition_moves_index_on(self, make_scheduler, make_module):
        sched = make_scheduler()
        _load_pair(sched, make_module, policy_a=FuelPolicy.none())

        sched.run_partition(0)

        assert sched.ring == [1]
        assert sched.current_partition_id == 1
        assert sched.step().partition_id == 1
        assert sched.registry.lookup(0).invocations == 1


class TestEndToEnd:
    def test_fixed_quantum_and_unbounded_partitions(self, make_scheduler, make_module):
        sched = make_scheduler()
        _load_pair(sched, make_module)

        first = sched.step()
        second = sched.step()

        assert (first.partition_id, first.status) == (0, YIELDED)
        assert (second.partition_id, second.status) == (1, COMPLETED)
        assert second.results == (55,)
        assert sched.ring == [0]

        summary = sched.run()

        assert summary.yielded == 25
        assert summary.completed == 1
        assert summary.last_results[0].results == (55,)
        assert summary.stop_reason == STOP_NO_RUNNABLE
        assert sched.registry.lookup(0).state == RETIRED
        assert sched.registry.lookup(1).state == RETIRED
        assert sched.registry.lookup(0).yields == 26

    def test_reinvoke_keeps_completed_partition_current(self, make_scheduler, make_module):
        sched = make_scheduler(completion_policy=REINVOKE)
        _load_pair(sched, make_module)

        summary = sched.run(max_cycles=10)

        assert summary.stop_reason == STOP_MAX_CYCLES
        assert summary.yielded == 1
        assert summary.completed == 9
        assert sched.current_partition_id == 1
        assert sched.registry.lookup(1).completions == 9
        assert sched.registry.lookup(1).fuel_remaining() == 10_000_000 - 9 * FIB_COST

    def test_failed_partition_does_not_stop_the_other(self, make_scheduler, make_module):
        sched = make_scheduler()
        sched.load_partition(0, make_module(fuel_cost=5_000))
        sched.load_partition(1, make_module(fuel_cost=100, results=[1]))
        sched.inject_fuel(0, budget=1_000)
        sched.inject_fuel(1)

        summary = sched.run()

        assert summary.failed == 1
        assert summary.completed == 1
        assert summary.last_results[0].status == FAILED
        assert summary.last_results[1].results == (1,)
        assert sched.registry.lookup(0).instantiated
        assert sched.events.count_events(event_type="slice_failed", partition_id=0) == 1
        assert sched.events.count_events(event_type="partition_retired") == 2


class TestRefuel:
    def test_refuel_after_exhaustion_runs_again(self, make_scheduler, make_module):
        sched = make_scheduler()
        p = sched.load_partition(0, make_module(fuel_cost=5_000, results=[55]))
        sched.inject_fuel(0, budget=1_000)

        assert sched.step().status == FAILED
        assert p.state == RETIRED
        assert sched.ring == []

        injection = sched.inject_fuel(0, budget=10_000)

        assert injection.amount == 10_000
        assert p.state == IDLE
        assert sched.ring == [0]
        result = sched.step()
        assert (result.status, result.results) == (COMPLETED, (55,))
        assert result.fuel_remaining == 5_000
        assert sched.ring == []
        assert sched.events.count_events(event_type="partition_reactivated", partition_id=0) == 1

    def test_refuelled_partition_rejoins_behind_current(self, make_scheduler, make_module):
        sched = make_scheduler()
        sched.load_partition(0, make_module(fuel_cost=5_000))
        sched.load_partition(1, make_module(fuel_cost=10**9))
        sched.inject_fuel(0, budget=1_000)
        sched.inject_fuel(1, FuelPolicy.fixed_quantum(100))

        assert sched.step().status == FAILED
        assert sched.step().partition_id == 1

        sched.inject_fuel(0, budget=10_000)

        assert sched.ring == [0, 1]
        assert sched.current_partition_id == 1
        assert [sched.step().partition_id for _ in range(2)] == [1, 0]

    def test_refuel_after_completion_is_rejected(self, make_scheduler, make_module):
        sched = make_scheduler()
        p = sched.load_partition(0, make_module(fuel_cost=100))
        sched.inject_fuel(0)
        assert sched.step().status == COMPLETED

        with pytest.raises(ConflictError) as exc:
            sched.inject_fuel(0)

        assert exc.value.phase == "inject"
        assert p.state == RETIRED
        assert sched.ring == []

    def test_run_partition_failure_is_refuelable(self, make_scheduler, make_module):
        sched = make_scheduler()
        sched.load_partition(0, make_module(fuel_cost=5_000))
        sched.inject_fuel(0, budget=1_000)

        assert sched.run_partition(0).status == FAILED
        assert sched.ring == []

        sched.inject_fuel(0, budget=10_000)
        assert sched.run_partition(0).status == COMPLETED

    def test_operator_retirement_can_allow_refuel(self, make_scheduler, make_module):
        sched = make_scheduler()
        sched.load_partition(0, make_module())
        sched.load_partition(1, make_module())
        sched.retire_partition(0, reason="inject_failed", refuelable=True)
        sched.retire_partition(1, reason="operator")

        sched.inject_fuel(0)
        with pytest.raises(ConflictError):
            sched.inject_fuel(1)
        assert sched.ring == [0]


class TestRunLoop:
    def test_empty_ring(self, make_scheduler):
        sched = make_scheduler()
        assert sched.step() is None
        summary = sched.run()
        assert summary.cycles == 0
        assert summary.stop_reason == STOP_NO_RUNNABLE

    def test_default_cycle_limit(self, make_scheduler, make_module):
        sched = make_scheduler(max_cycles=3)
        sched.load_partition(0, make_module(fuel_cost=10**9))
        sched.inject_fuel(0, FuelPolicy.fixed_quantum(100))
        summary = sched.run()
        assert summary.cycles == 3
        assert summary.stop_reason == STOP_MAX_CYCLES
        assert sched.cycle == 3

    def test_should_stop_is_checked_between_cycles(self, make_scheduler, make_module):
        sched = make_scheduler()
        sched.load_partition(0, make_module(fuel_cost=10**9))
        sched.inject_fuel(0, FuelPolicy.fixed_quantum(100))
        calls = itertools.count()

        summary = sched.run(should_stop=lambda: next(calls) >= 5)

        assert summary.cycles == 5
        assert summary.stop_reason == STOP_CANCELLED

    def test_retire_partition_before_its_turn(self, make_scheduler, make_module):
        sched = make_scheduler()
        _load_pair(sched, make_module)
        sched.retire_partition(0, reason="operator")
        assert sched.ring == [1]
        assert sched.step().partition_id == 1


class TestShutdown:
    def test_teardown_after_partial_failure(self, make_scheduler, make_module, engine):
        sched = make_scheduler()
        sched.load_partition(0, make_module())
        with pytest.raises(InstantiateError):
            sched.load_partition(1, make_module(start_trap=True))

        released = sched.shutdown()

        assert released == [0]
        assert engine.released_contexts.count(0) == 1
        assert engine.live_contexts == 0
        assert engine.closed

    def test_shutdown_is_idempotent(self, make_scheduler, make_module):
        sched = make_scheduler()
        p = sched.load_partition(0, make_module())
        assert sched.shutdown() == [0]
        assert sched.shutdown() == []
        assert p.state == RELEASED
        assert sched.events.count_events(event_type="scheduler_shutdown") == 1

    def test_operations_after_shutdown_are_rejected(self, make_scheduler, make_module):
        sched = make_scheduler()
        sched.shutdown()
        with pytest.raises(ConflictError):
            sched.step()
        with pytest.raises(ConflictError):
            sched.load_partition(0, make_module())

    def test_drain_resolves_in_flight_calls(self, make_scheduler, make_module):
        sched = make_scheduler()
        p = sched.load_partition(0, make_module(fuel_cost=1_050))
        sched.inject_fuel(0, FuelPolicy.fixed_quantum(100))
        sched.step()
        assert p.in_flight

        resolved = sched.drain()

        assert [r.status for r in resolved] == [COMPLETED]
        assert not p.in_flight
        assert p.yields == 10
        assert p.state == RETIRED
        assert sched.ring == []
        assert sched.step() is None
        assert p.invocations == 1

    def test_drain_retires_every_resolved_partition(self, make_scheduler, make_module):
        sched = make_scheduler()
        _load_pair(sched, make_module, cost_b=1_050, policy_b=FuelPolicy.fixed_quantum(100))
        sched.step()
        sched.step()
        assert sched.registry.lookup(0).in_flight and sched.registry.lookup(1).in_flight

        resolved = sched.drain()

        assert [(r.partition_id, r.status) for r in resolved] == [(0, COMPLETED), (1, COMPLETED)]
        assert sched.ring == []
        assert sched.current_index == 0
        assert sched.events.count_events(event_type="partition_retired") == 2

    def test_context_manager_shuts_down(self, make_scheduler, make_module, engine):
        with make_scheduler() as sched:
            sched.load_partition(0, make_module())
        assert engine.live_contexts == 0
        assert engine.closed
