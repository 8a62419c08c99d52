import pytest

from ccr.errors import ResourceInUse
from ccr.labels import KIND_CONTAINER, identity_labels
from ccr.teardown import teardown


def test_teardown_removes_containers_then_volumes_then_networks(runtime, progress, network_labels, volume_labels):
    runtime.add_container("myproj", "web")
    runtime.add_container("myproj", "db")
    runtime.add_volume("myproj_data", volume_labels("myproj", "data"))
    runtime.add_network("myproj-default", network_labels("myproj", "default"))
    runtime.add_container("other", "web")

    removed = teardown(runtime, "myproj", progress=progress, stop_timeout=1)

    assert removed == 4
    kinds = [c[0] for c in runtime.mutations()]
    assert kinds == ["remove_container", "remove_container", "remove_volume", "remove_network"]
    assert ("stop_container", "myproj_db_2") in runtime.calls
    assert len(runtime.containers) == 1
    assert runtime.volumes == {}
    assert runtime.network_by_name("myproj-default")[1] is None


def test_teardown_is_a_noop_when_nothing_remains(runtime, progress):
    assert teardown(runtime, "myproj", progress=progress) == 0
    assert runtime.calls == []


def test_teardown_skips_external_resources(runtime, progress, network_labels, volume_labels):
    runtime.add_network("edge", network_labels("myproj", "edge"))
    runtime.add_volume("shared", volume_labels("myproj", "shared"))

    removed = teardown(
        runtime, "myproj", external_networks=["edge"], external_volumes=["shared"], progress=progress
    )

    assert removed == 0
    assert runtime.network_by_name("edge")[1] is not None
    assert "shared" in runtime.volumes


def test_network_in_use_aborts_network_removal(runtime, progress, network_labels, volume_labels):
    runtime.add_container("myproj", "web")
    runtime.add_volume("myproj_data", volume_labels("myproj", "data"))
    runtime.add_network("a-net", network_labels("myproj", "a"))
    runtime.add_network("b-net", network_labels("myproj", "b"))
    # A container from another project still uses the first network.
    cid = runtime.add_container("other", "web")
    runtime.containers[cid]["networks"]["a-net"] = ["web"]

    with pytest.raises(ResourceInUse) as exc:
        teardown(runtime, "myproj", progress=progress)

    assert exc.value.kind == "network"
    assert runtime.network_by_name("a-net")[1] is not None
    assert runtime.network_by_name("b-net")[1] is not None
    # Removals of earlier kinds stand.
    assert list(runtime.containers) == [cid]
    assert runtime.volumes == {}


def test_container_labels_drive_removal(runtime, progress):
    cid = runtime.add_container("myproj", "web")
    assert runtime.containers[cid]["labels"] == {
        **identity_labels("myproj", KIND_CONTAINER, "web"),
        "io.compose-spec.config-hash": "stale",
    }
    teardown(runtime, "myproj", progress=progress)
    assert runtime.containers == {}
    assert progress.lines == [f"Stopping containers for service web ... {cid[:12]}"]
