import pytest

from conftest import FakeFabricDriver
from meshgate import db
from meshgate.errors import InvalidSpec
from meshgate.fabric import Fabric, VolumeInUse
from meshgate.models import ServiceSpec, VolumeBinding


def _spec(name, *volumes, network="devops-network"):
    return ServiceSpec(
        name=name,
        image="img",
        network=network,
        volumes=tuple(VolumeBinding(source=v, target=f"/data/{v}") for v in volumes),
    )


def test_network_created_once():
    driver = FakeFabricDriver()
    fabric = Fabric("devops-network", ["data"], driver=driver)

    fabric.attach(_spec("a"))
    fabric.attach(_spec("b"))

    assert driver.networks == ["devops-network"]


def test_volumes_created_lazily_and_shared():
    driver = FakeFabricDriver()
    fabric = Fabric("devops-network", ["data", "logs"], driver=driver)
    assert driver.volumes == []

    att = fabric.attach(_spec("a", "data"))
    fabric.attach(_spec("b", "data"))

    assert att.alias == "a"
    assert att.volumes == ("data",)
    assert driver.volumes == ["data"]
    assert db.list_volumes() == ["data"]
    vols = {v.name: v for v in fabric.volumes()}
    assert vols["data"].created and vols["data"].attached == {"a", "b"}
    assert not vols["logs"].created


def test_bind_mounts_are_not_volumes():
    driver = FakeFabricDriver()
    fabric = Fabric("devops-network", [], driver=driver)
    spec = ServiceSpec(
        name="jenkins",
        image="img",
        volumes=(VolumeBinding(source="/var/run/docker.sock", target="/var/run/docker.sock", bind=True),),
    )

    assert fabric.attach(spec).volumes == ()
    assert driver.volumes == []


def test_attach_rejects_undeclared_volume_and_foreign_network():
    fabric = Fabric("devops-network", ["data"], driver=FakeFabricDriver())

    with pytest.raises(InvalidSpec):
        fabric.attach(_spec("a", "other"))
    with pytest.raises(InvalidSpec):
        fabric.attach(_spec("a", "data", network="elsewhere"))


def test_volume_survives_detach_until_removed():
    driver = FakeFabricDriver()
    fabric = Fabric("devops-network", ["data"], driver=driver)
    fabric.attach(_spec("a", "data"))

    with pytest.raises(VolumeInUse):
        fabric.remove_volume("data")

    fabric.detach("a")
    # re-attaching does not create it again
    fabric.attach(_spec("a", "data"))
    fabric.detach("a")
    assert driver.volumes == ["data"]

    fabric.remove_volume("data")
    assert driver.removed == ["data"]
    assert db.list_volumes() == []


def test_created_volumes_are_remembered_across_processes():
    db.record_volume("data")
    driver = FakeFabricDriver()
    fabric = Fabric("devops-network", ["data"], driver=driver)

    fabric.attach(_spec("a", "data"))

    assert driver.volumes == []
