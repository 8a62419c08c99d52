from unittest import mock

import pytest
import requests
from docker.errors import APIError, DockerException, NotFound

from ccr.docker_ops import ContainerRef, DockerRuntime, ExecutionUnitSpec, NetworkRef, VolumeRef
from ccr.errors import ConfigTranslationError, ConnectivityError, ResourceInUse, RuntimeRequestError, ServiceStartError


def _api_error(status, explanation="boom"):
    return APIError("request failed", response=mock.Mock(status_code=status), explanation=explanation)


def _model(name, **attrs):
    # Mock() reserves the `name` keyword, so it is set afterwards.
    m = mock.Mock(**attrs)
    m.name = name
    return m


@pytest.fixture
def docker_client():
    return mock.MagicMock()


@pytest.fixture
def rt(docker_client):
    return DockerRuntime(docker_client)


def test_list_containers_uses_label_filters(rt, docker_client):
    docker_client.containers.list.return_value = [
        _model(
            "myproj_web",
            id="a" * 64,
            labels={"k": "v"},
            status="running",
            attrs={"NetworkSettings": {"Networks": {"myproj-default": {}, "back": {}}}},
        )
    ]

    refs = rt.list_containers(["io.compose-spec.project=myproj"])

    docker_client.containers.list.assert_called_once_with(
        all=True, filters={"label": ["io.compose-spec.project=myproj"]}, ignore_removed=True
    )
    assert refs == [
        ContainerRef(
            id="a" * 64, name="myproj_web", labels={"k": "v"}, state="running", networks=("myproj-default", "back")
        )
    ]


def test_list_networks_and_volumes_read_labels_from_attrs(rt, docker_client):
    docker_client.networks.list.return_value = [_model("myproj-default", id="n1", attrs={"Labels": None})]
    docker_client.volumes.list.return_value = [_model("myproj_data", attrs={"Labels": {"a": "b"}})]

    assert rt.list_networks(["x=y"]) == [NetworkRef(id="n1", name="myproj-default", labels={})]
    assert rt.list_volumes(["x=y"]) == [VolumeRef(name="myproj_data", labels={"a": "b"})]


def test_unreachable_daemon_is_a_connectivity_error(rt, docker_client):
    docker_client.networks.list.side_effect = requests.exceptions.ConnectionError("refused")
    with pytest.raises(ConnectivityError):
        rt.list_networks([])


def test_from_env_fails_fast_without_daemon():
    with mock.patch("docker.from_env", side_effect=DockerException("no socket")):
        with pytest.raises(ConnectivityError):
            DockerRuntime.from_env()


def test_not_found_means_absent(rt, docker_client):
    docker_client.networks.get.side_effect = NotFound("no such network")
    docker_client.volumes.get.side_effect = NotFound("no such volume")
    docker_client.images.get.side_effect = NotFound("no such image")

    assert rt.inspect_network("x") is None
    assert rt.inspect_volume("x") is None
    assert rt.image_present("app:1") is False


def test_other_api_errors_are_runtime_request_errors(rt, docker_client):
    docker_client.networks.get.side_effect = _api_error(500)
    with pytest.raises(RuntimeRequestError):
        rt.inspect_network("x")


@pytest.mark.parametrize("status", [403, 409])
def test_network_removal_blocked_by_dependents(rt, docker_client, status):
    docker_client.networks.get.return_value.remove.side_effect = _api_error(status, "network has active endpoints")
    with pytest.raises(ResourceInUse) as exc:
        rt.remove_network(NetworkRef(id="n1", name="myproj-default"))
    assert exc.value.kind == "network"
    docker_client.networks.get.assert_called_once_with("n1")


def test_volume_removal_blocked_by_dependents(rt, docker_client):
    docker_client.volumes.get.return_value.remove.side_effect = _api_error(409, "volume is in use")
    with pytest.raises(ResourceInUse):
        rt.remove_volume(VolumeRef(name="myproj_data"))


def test_removing_absent_resources_is_not_an_error(rt, docker_client):
    docker_client.containers.get.side_effect = NotFound("gone")
    ref = ContainerRef(id="c1", name="myproj_web")
    rt.stop_container(ref, timeout=1)
    rt.remove_container(ref)


def test_stop_passes_timeout(rt, docker_client):
    rt.stop_container(ContainerRef(id="c1", name="myproj_web"), timeout=7)
    docker_client.containers.get.assert_called_once_with("c1")
    docker_client.containers.get.return_value.stop.assert_called_once_with(timeout=7)


def test_create_network_translates_ipam(rt, docker_client):
    docker_client.networks.create.return_value = _model("back", id="n1")

    ref = rt.create_network("back", "bridge", ipam={"driver": None, "subnets": ["10.0.0.0/24"]}, labels={"a": "b"})

    assert ref == NetworkRef(id="n1", name="back", labels={"a": "b"})
    kwargs = docker_client.networks.create.call_args.kwargs
    assert kwargs["driver"] == "bridge"
    assert kwargs["ipam"]["Driver"] == "default"
    assert kwargs["ipam"]["Config"][0]["Subnet"] == "10.0.0.0/24"


def test_connect_network_sets_aliases(rt, docker_client):
    rt.connect_network("back", "c" * 64, ["api", "cccccccccccc"])
    docker_client.networks.get.assert_called_once_with("back")
    docker_client.networks.get.return_value.connect.assert_called_once_with("c" * 64, aliases=["api", "cccccccccccc"])


def test_create_container_builds_host_and_networking_config(rt, docker_client):
    api = docker_client.api
    api.create_host_config.return_value = {"NetworkMode": "myproj-default"}
    api.create_endpoint_config.return_value = {"Aliases": ["web"]}
    api.create_networking_config.return_value = {"EndpointsConfig": {}}
    api.create_container.return_value = {"Id": "c" * 64, "Warnings": []}
    spec = ExecutionUnitSpec(
        service="web",
        name="myproj_web",
        config={"image": "app:1", "labels": {"x": "y"}},
        host_config={"network_mode": "myproj-default"},
        primary_network="myproj-default",
        aliases=["web"],
    )

    assert rt.create_container(spec) == "c" * 64

    api.create_host_config.assert_called_once_with(network_mode="myproj-default")
    api.create_endpoint_config.assert_called_once_with(aliases=["web"])
    api.create_networking_config.assert_called_once_with({"myproj-default": {"Aliases": ["web"]}})
    api.create_container.assert_called_once_with(
        name="myproj_web",
        host_config={"NetworkMode": "myproj-default"},
        networking_config={"EndpointsConfig": {}},
        image="app:1",
        labels={"x": "y"},
    )


def test_invalid_host_config_is_a_translation_error(rt, docker_client):
    docker_client.api.create_host_config.side_effect = ValueError("userns_mode must be 'host'")
    spec = ExecutionUnitSpec(service="web", name="n", config={"image": "x"}, host_config={"userns_mode": "bad"})
    with pytest.raises(ConfigTranslationError):
        rt.create_container(spec)


def test_start_failure_is_a_service_start_error(rt, docker_client):
    docker_client.containers.get.return_value.start.side_effect = _api_error(500, "port is already allocated")
    with pytest.raises(ServiceStartError) as exc:
        rt.start_container("d" * 64, "web")
    assert exc.value.service == "web"
