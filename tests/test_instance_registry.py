import threading

import pytest

from mcsupervisor.services.instance_registry import (
    AlreadyRunning, InstanceRegistry, InstanceState, LaunchConfig, NotFound,
)

CONFIG = LaunchConfig(working_directory="/srv/minecraft/survival")


def test_reserve_creates_once_and_returns_same_record():
    registry = InstanceRegistry()
    first = registry.reserve("survival", CONFIG)
    second = registry.reserve("survival", LaunchConfig(working_directory="/elsewhere"))

    assert first is second
    assert first.instance.config == CONFIG
    assert first.instance.state == InstanceState.CREATED
    assert len(registry) == 1


def test_reserve_is_atomic_across_threads():
    registry = InstanceRegistry()
    records = []
    barrier = threading.Barrier(8)

    def _worker():
        barrier.wait()
        records.append(registry.reserve("lobby", CONFIG))

    threads = [threading.Thread(target=_worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len({id(r) for r in records}) == 1
    assert registry.ids() == ["lobby"]


def test_reserve_unknown_without_config_is_not_found():
    registry = InstanceRegistry()
    with pytest.raises(NotFound):
        registry.reserve("ghost", None)
    assert "ghost" not in registry


def test_get_returns_snapshot():
    registry = InstanceRegistry()
    record = registry.reserve("survival", CONFIG)
    record.instance.player_names.add("Steve")

    snap = registry.get("survival")
    snap.player_names.add("Alex")
    snap.players_online = 99

    assert record.instance.player_names == {"Steve"}
    assert record.instance.players_online == 0


def test_list_instances_and_missing_lookup():
    registry = InstanceRegistry()
    registry.reserve("a", CONFIG)
    registry.reserve("b", CONFIG)

    assert sorted(i.id for i in registry.list_instances()) == ["a", "b"]
    with pytest.raises(NotFound):
        registry.get("c")


def test_remove_refuses_active_instance():
    registry = InstanceRegistry()
    record = registry.reserve("survival", CONFIG)
    record.instance.state = InstanceState.ONLINE

    with pytest.raises(AlreadyRunning):
        registry.remove("survival")

    record.instance.state = InstanceState.CRASHED
    registry.remove("survival")
    assert "survival" not in registry

    with pytest.raises(NotFound):
        registry.remove("survival")
