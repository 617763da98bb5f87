"""Tests for the display state fed by cycle results."""

import pytest

from nanodc_monitor.data.board import default_layout
from nanodc_monitor.data.mapping import MappingRegistry
from nanodc_monitor.data.models import CycleResult, Entity, FailureKind
from nanodc_monitor.data.persistence import DataStore
from nanodc_monitor.server.workers import DisplayState, RefreshController


@pytest.fixture
def registry():
    return MappingRegistry.from_dict({"gy01": {"display_name": "GY01"}})


@pytest.fixture
def display(registry):
    state = DisplayState(registry, default_layout())
    state.select_site("bc02")
    return state


def ok_result(site_id, catalog, cycle=1):
    return CycleResult(site_id=site_id, generation=1, cycle=cycle, catalog=tuple(catalog))


class TestDisplayState:
    def test_select_site_without_cache(self, display):
        slots, last_error, last_refresh = display.snapshot()
        assert len(slots) == 15
        assert all(slot.entity is None for slot in slots)
        assert slots[4].display_name == "BC02 Filecoin Miner"
        assert last_error is None
        assert last_refresh is None
        assert display.is_ready() is False
        assert display.get_status()["meta"]["status"] == "loading"

    def test_successful_cycle_resolves_slots(self, display, bc02_catalog):
        assert display.on_cycle(ok_result("bc02", bc02_catalog)) is True

        slots, last_error, last_refresh = display.snapshot()
        assert slots[4].entity.name == "BC02 Filecoin Miner Node"
        assert slots[9].entity.name == "BC02 NAS1"
        assert last_error is None
        assert last_refresh is not None
        assert display.is_ready() is True

    def test_result_for_other_site_is_discarded(self, display, bc02_catalog):
        assert display.on_cycle(ok_result("gy01", bc02_catalog)) is False

        slots, _, _ = display.snapshot()
        assert all(slot.entity is None for slot in slots)
        assert display.get_status()["meta"]["discarded_results"] == 1

    def test_failed_cycle_keeps_last_known_catalog(self, display, bc02_catalog):
        display.on_cycle(ok_result("bc02", bc02_catalog))
        failed = CycleResult(
            site_id="bc02", generation=1, cycle=2, failure=FailureKind.NETWORK, error="refused"
        )
        assert display.on_cycle(failed) is True

        slots, last_error, _ = display.snapshot()
        assert slots[4].entity.name == "BC02 Filecoin Miner Node"
        assert last_error == "NETWORK: refused"
        meta = display.get_status()["meta"]
        assert meta["stale"] is True
        assert meta["entity_count"] == len(bc02_catalog)

    def test_recovery_clears_stale(self, display, bc02_catalog):
        display.on_cycle(CycleResult(site_id="bc02", generation=1, cycle=1, failure=FailureKind.TIMEOUT, error="slow"))
        assert display.get_status()["meta"]["stale"] is True
        display.on_cycle(ok_result("bc02", bc02_catalog, cycle=2))
        meta = display.get_status()["meta"]
        assert meta["stale"] is False
        assert meta["last_error"] is None

    def test_presenter_receives_every_cycle(self, registry, bc02_catalog):
        received = []
        state = DisplayState(registry, default_layout())
        state.add_presenter(lambda site_id, slots: received.append((site_id, slots)))
        state.select_site("bc02")
        state.on_cycle(ok_result("bc02", bc02_catalog))
        state.on_cycle(CycleResult(site_id="bc02", generation=1, cycle=2, failure=FailureKind.MALFORMED, error="x"))

        assert len(received) == 3
        assert all(len(slots) == 15 for _, slots in received)
        assert received[2][1][4].entity.name == "BC02 Filecoin Miner Node"

    def test_presenter_error_is_contained(self, registry, bc02_catalog):
        state = DisplayState(registry, default_layout())

        def broken(site_id, slots):
            raise RuntimeError("render failed")

        state.add_presenter(broken)
        state.select_site("bc02")
        assert state.on_cycle(ok_result("bc02", bc02_catalog)) is True

    def test_select_site_switches_rules(self, display):
        catalog = (Entity("alpha"), Entity("beta"))
        display.select_site("gy01")
        display.on_cycle(ok_result("gy01", catalog))

        slots, _, _ = display.snapshot()
        assert slots[4].entity.name == "alpha"
        assert slots[5].entity.name == "beta"
        assert slots[4].site_mapped is False
        assert display.get_status()["meta"]["site_name"] == "GY01"


class TestDisplayStatePersistence:
    def test_saves_and_restores_catalog(self, registry, temp_data_dir, bc02_catalog):
        store = DataStore(temp_data_dir)
        state = DisplayState(registry, default_layout(), store)
        state.select_site("bc02")
        state.on_cycle(ok_result("bc02", bc02_catalog))

        restored = DisplayState(registry, default_layout(), store)
        restored.select_site("bc02")

        slots, _, _ = restored.snapshot()
        assert slots[4].entity.name == "BC02 Filecoin Miner Node"
        meta = restored.get_status()["meta"]
        assert meta["from_cache"] is True
        assert meta["stale"] is True
        assert restored.is_ready() is True

    def test_failed_cycle_does_not_overwrite_cache(self, registry, temp_data_dir, bc02_catalog):
        store = DataStore(temp_data_dir)
        state = DisplayState(registry, default_layout(), store)
        state.select_site("bc02")
        state.on_cycle(ok_result("bc02", bc02_catalog))
        state.on_cycle(CycleResult(site_id="bc02", generation=1, cycle=2, failure=FailureKind.MALFORMED, error="x"))

        assert len(store.load_catalog("bc02")) == len(bc02_catalog)
        history = store.get_cycle_history("bc02")
        assert [h["failure"] for h in history] == ["MALFORMED", None]


class TestControllerIntegration:
    def test_old_site_results_never_reach_new_site(self, registry, scripted_collector, wait_until):
        catalog = (Entity("BC02 Filecoin Miner"), Entity("node-x"))
        collector = scripted_collector(default=catalog)
        display = DisplayState(registry, default_layout())
        controller = RefreshController(collector, interval=0.01, quiescence_delay=0.01)
        applied = []
        display.add_presenter(lambda site_id, slots: applied.append(site_id))
        controller.subscribe(display.on_cycle)

        display.select_site("bc02")
        controller.start("bc02")
        try:
            assert wait_until(lambda: applied.count("bc02") >= 3)
            display.select_site("gy01")
            controller.change_site("gy01")
            assert wait_until(lambda: applied.count("gy01") >= 3)
        finally:
            controller.stop()

        switch = applied.index("gy01")
        assert all(site == "gy01" for site in applied[switch:])
        slots, _, _ = display.snapshot()
        assert slots[4].entity.name == "BC02 Filecoin Miner"
        assert slots[4].site_mapped is False
