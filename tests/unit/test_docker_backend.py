from unittest.mock import MagicMock

import pytest
from docker.errors import APIError, NotFound

from stackctl.BACKENDS.docker_backend import PROJECT_LABEL, SERVICE_LABEL, DockerBackend, image_name
from stackctl.errors import BackendError, StartFailed
from stackctl.MODELS.orchestration_config import ServiceTopology
from stackctl.MODELS.service_definition import PortBinding, ServiceSpec, VolumeMount


@pytest.fixture
def client():
    client = MagicMock()
    client.containers.get.side_effect = NotFound("no such container")
    return client


@pytest.fixture
def backend(client, tmp_path):
    return DockerBackend("shop", base_dir=str(tmp_path), client=client)


def web_spec():
    return ServiceSpec(
        name="web",
        image="nginx:1.27",
        environment={"MODE": "prod"},
        ports=[PortBinding(container_port=80, host_port=8080), PortBinding(container_port=443)],
        volumes=[VolumeMount(source="./html", target="/usr/share/nginx/html", read_only=True),
                 VolumeMount(source="cache", target="/cache")],
        labels={"team": "storefront"},
    )


@pytest.mark.parametrize("tag, expected", [
    ("shop-web", "shop-web:latest"),
    ("Shop Web:1.0", "shop-web:1.0"),
    ("registry.example.com/shop/web:2", "registry.example.com/shop/web:2"),
])
def test_image_name(tag, expected):
    assert image_name(tag) == expected


def test_start_creates_labelled_container(backend, client, tmp_path):
    client.containers.create.return_value = MagicMock(id="c0ffee", short_id="c0ffee")

    handle = backend.start(web_spec(), None, {"WEB_HOST": "web"})

    assert handle == "c0ffee"
    client.images.get.assert_called_once_with("nginx:1.27")
    kwargs = client.containers.create.call_args.kwargs
    assert kwargs["name"] == "shop_web"
    assert kwargs["environment"] == {"WEB_HOST": "web", "MODE": "prod"}
    assert kwargs["ports"] == {"80/tcp": 8080, "443/tcp": None}
    assert kwargs["volumes"] == {
        str(tmp_path / "html"): {"bind": "/usr/share/nginx/html", "mode": "ro"},
        "shop_cache": {"bind": "/cache", "mode": "rw"},
    }
    assert kwargs["labels"] == {"team": "storefront", PROJECT_LABEL: "shop", SERVICE_LABEL: "web"}
    client.networks.get.assert_called_once_with("shop_default")
    client.networks.get.return_value.connect.assert_called_once_with(
        client.containers.create.return_value, aliases=["web"])
    client.containers.create.return_value.start.assert_called_once()


def test_start_failure(backend, client):
    client.containers.create.side_effect = APIError("port is already allocated")
    with pytest.raises(StartFailed) as excinfo:
        backend.start(web_spec(), None, {})
    assert excinfo.value.name == "web"


def test_stale_container_removal_failure(backend, client):
    stale = MagicMock()
    stale.remove.side_effect = APIError("removal of container shop_web is already in progress")
    client.containers.get.side_effect = None
    client.containers.get.return_value = stale

    with pytest.raises(StartFailed) as excinfo:
        backend.start(web_spec(), None, {})
    assert excinfo.value.name == "web"
    client.containers.create.assert_not_called()


def test_prepare_creates_network_and_volumes(backend, client):
    client.networks.list.return_value = []
    client.volumes.get.side_effect = NotFound("no such volume")
    topology = ServiceTopology(project_name="shop", services={"web": web_spec()}, volumes={"cache": {}})

    backend.prepare(topology)

    client.networks.create.assert_called_once_with("shop_default", driver="bridge",
                                                   labels={PROJECT_LABEL: "shop"})
    client.volumes.create.assert_called_once_with("shop_cache", labels={PROJECT_LABEL: "shop"})


def test_prepare_failure(backend, client):
    client.networks.list.return_value = []
    client.networks.create.side_effect = APIError("network shop_default already exists")
    topology = ServiceTopology(project_name="shop", services={"web": web_spec()})

    with pytest.raises(BackendError, match="shop_default"):
        backend.prepare(topology)
    client.volumes.create.assert_not_called()


def test_discover_by_label(backend, client):
    client.containers.list.return_value = [
        MagicMock(id="c1", labels={PROJECT_LABEL: "shop", SERVICE_LABEL: "web"}),
        MagicMock(id="c2", labels={PROJECT_LABEL: "shop"}),
    ]
    assert backend.discover() == {"web": "c1"}
    client.containers.list.assert_called_once_with(filters={"label": "stackctl.project=shop"})


def test_container_state(backend, client):
    container = MagicMock(
        status="exited",
        attrs={"State": {"ExitCode": 137}},
        ports={"80/tcp": [{"HostIp": "0.0.0.0", "HostPort": "49153"}], "9000/tcp": None},
    )
    client.containers.get.side_effect = None
    client.containers.get.return_value = container

    assert not backend.is_running("c1")
    assert backend.exit_code("c1") == 137
    assert backend.published_ports("c1", web_spec()) == {80: 49153}
    assert backend.probe_address("c1", web_spec(), "127.0.0.1", 80) == ("127.0.0.1", 49153)


def test_stop_missing_container_is_ignored(backend, client):
    backend.stop("gone", 5)
    assert backend.is_running("gone") is False


def test_run_check_uses_exec(backend, client):
    container = MagicMock()
    container.exec_run.return_value = MagicMock(exit_code=0)
    client.containers.get.side_effect = None
    client.containers.get.return_value = container

    assert backend.run_check("c1", web_spec(), ["CMD-SHELL", "curl -f localhost"], 5)
    container.exec_run.assert_called_once_with(["/bin/sh", "-c", "curl -f localhost"])
