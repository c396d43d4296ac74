from __future__ import annotations

import logging
from unittest.mock import MagicMock

import pytest

import vast_manager
from errors import (
    BenchmarkFailure,
    InstanceCreationFailure,
    NoOfferFound,
    ProvisionTimeout,
    TeardownFailure,
)
from utils import DEFAULT_CONFIG
from vast_manager import VastManager


@pytest.fixture
def sdk():
    return MagicMock()


@pytest.fixture
def manager(sdk, monkeypatch):
    monkeypatch.setattr(vast_manager.time, "sleep", lambda seconds: None)
    return VastManager(DEFAULT_CONFIG["vast"], logging.getLogger("test"), sdk=sdk)


def test_requires_api_key(monkeypatch, tmp_path) -> None:
    monkeypatch.delenv("VAST_API_KEY", raising=False)
    monkeypatch.setenv("HOME", str(tmp_path))
    with pytest.raises(ValueError, match="No Vast.ai API key"):
        VastManager(DEFAULT_CONFIG["vast"], logging.getLogger("test"))


def test_find_offer_queries_machine(manager, sdk) -> None:
    sdk.search_offers.return_value = [{"id": 5, "gpu_name": "RTX 4090", "host_id": 9}]
    offer = manager.find_offer(123)
    assert offer["id"] == 5
    sdk.search_offers.assert_called_once_with(query="machine_id=123 rentable=true")


def test_find_offer_parses_text_response(manager, sdk) -> None:
    sdk.search_offers.return_value = '[{"id": 6}]'
    assert manager.find_offer(1)["id"] == 6


@pytest.mark.parametrize("response", [[], "[]", "", None, [{"gpu_name": "x"}]])
def test_find_offer_raises_when_nothing_rentable(manager, sdk, response) -> None:
    sdk.search_offers.return_value = response
    with pytest.raises(NoOfferFound):
        manager.find_offer(42)


def test_create_instance_passes_onstart_and_label(manager, sdk) -> None:
    sdk.create_instance.return_value = {"success": True, "new_contract": 1001}

    assert manager.create_instance(5, "#!/bin/bash\necho hi", "quickmark-123") == 1001

    sdk.create_instance.assert_called_once_with(
        id=5,
        image="vastai/pytorch",
        disk=20,
        onstart_cmd="#!/bin/bash\necho hi",
        label="quickmark-123",
        ssh=True,
        direct=True,
    )


def test_create_instance_without_contract_fails(manager, sdk) -> None:
    sdk.create_instance.return_value = {"success": False, "msg": "no such ask"}
    with pytest.raises(InstanceCreationFailure):
        manager.create_instance(5, "", "label")


def test_wait_for_running(manager, sdk) -> None:
    sdk.show_instance.side_effect = [{"actual_status": "loading"}, {"actual_status": "running"}]
    seen = []
    manager.wait_for_running(1001, timeout=60, poll_interval=10, on_status=lambda s, w: seen.append((s, w)))
    assert seen == [("loading", 0), ("running", 10)]


def test_wait_for_running_times_out(manager, sdk) -> None:
    sdk.show_instance.return_value = {"actual_status": "loading"}
    with pytest.raises(ProvisionTimeout):
        manager.wait_for_running(1001, timeout=30, poll_interval=10)
    assert sdk.show_instance.call_count == 3


def test_wait_for_running_fails_on_exited(manager, sdk) -> None:
    sdk.show_instance.return_value = [{"status": "exited"}]
    with pytest.raises(BenchmarkFailure, match="exited"):
        manager.wait_for_running(1001, timeout=30, poll_interval=10)


def test_wait_for_log_marker(manager, sdk) -> None:
    sdk.logs.side_effect = ["booting\n", "booting\nrunning agent\n\n", "done\nQUICKMARK_BENCHMARK_COMPLETE\n"]
    polled = []
    logs = manager.wait_for_log_marker(
        1001, "QUICKMARK_BENCHMARK_COMPLETE", timeout=100, poll_interval=10,
        on_poll=lambda line, waited: polled.append(line)
    )
    assert logs.endswith("QUICKMARK_BENCHMARK_COMPLETE\n")
    assert polled == ["booting", "running agent", "QUICKMARK_BENCHMARK_COMPLETE"]


def test_wait_for_log_marker_timeout(manager, sdk) -> None:
    sdk.logs.return_value = "still running\n"
    assert manager.wait_for_log_marker(1001, "DONE", timeout=20, poll_interval=10) is None


def test_get_ssh_details(manager, sdk) -> None:
    sdk.show_instance.return_value = {"ssh_host": "ssh4.vast.ai", "ssh_port": 21000}
    assert manager.get_ssh_details(1001) == ("ssh4.vast.ai", 21000)


def test_destroy_instance_failure_is_teardown_failure(manager, sdk) -> None:
    sdk.destroy_instance.side_effect = RuntimeError("api error")
    with pytest.raises(TeardownFailure):
        manager.destroy_instance(1001)


def test_destroy_instances_by_label(manager, sdk) -> None:
    sdk.show_instances.return_value = [
        {"id": 1, "label": "quickmark-7"},
        {"id": 2, "label": "quickmark-8"},
        {"id": 3, "label": "quickmark-7"},
    ]
    sdk.destroy_instance.side_effect = [None, RuntimeError("busy")]

    assert manager.destroy_instances_by_label("quickmark-7") == [1]
    assert [c.kwargs["id"] for c in sdk.destroy_instance.call_args_list] == [1, 3]
