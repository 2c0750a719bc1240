import pytest

wasmtime = pytest.importorskip("wasmtime")

from fuelsched.engine.wasmtime_engine import WasmtimeEngine  # noqa: E402
from fuelsched.errors import CompileError, EngineError  # noqa: E402
from fuelsched.executor.partition import COMPLETED, FAILED, Partition  # noqa: E402

GUEST_WAT = """
(module
  (memory (export "memory") 1)
  (func (export "main") (param i32) (result i32)
    local.get 0
    i32.const 1
    i32.add)
  (func (export "spin")
    (loop br 0)))
"""


@pytest.fixture
def wasm_engine():
    engine = WasmtimeEngine()
    yield engine
    engine.close()


@pytest.fixture
def guest_bytes():
    return wasmtime.wat2wasm(GUEST_WAT)


def test_call_completes_and_consumes_fuel(wasm_engine, guest_bytes):
    p = Partition.load(wasm_engine, 0, guest_bytes, args=(10,))
    p.inject_fuel(10_000, None)

    result = p.run_slice()

    assert result.status == COMPLETED
    assert result.results == (11,)
    assert result.fuel_remaining < 10_000
    p.release()


def test_runaway_guest_runs_out_of_fuel(wasm_engine, guest_bytes):
    p = Partition.load(wasm_engine, 0, guest_bytes, entry_point="spin", args=())
    p.inject_fuel(1_000, None)

    result = p.run_slice()

    assert result.status == FAILED
    assert result.fuel_remaining == 0
    p.release()


def test_memory_export_is_not_callable(wasm_engine, guest_bytes):
    p = Partition.load(wasm_engine, 0, guest_bytes, entry_point="memory")
    p.inject_fuel(1_000, None)
    assert p.run_slice().phase == "lookup"
    p.release()


def test_yield_interval_is_rejected(wasm_engine, guest_bytes):
    p = Partition.load(wasm_engine, 0, guest_bytes)
    with pytest.raises(EngineError) as exc:
        p.inject_fuel(1_000, 100)
    assert exc.value.phase == "inject"
    p.release()


def test_invalid_binary(wasm_engine):
    with pytest.raises(CompileError):
        Partition.load(wasm_engine, 0, b"\x00asm\x02")
