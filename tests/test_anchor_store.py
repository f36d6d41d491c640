from __future__ import annotations

import os
import uuid

import pytest

from beacon_locator.anchor_store import AnchorStore
from beacon_locator.config_manager import ConfigManager
from beacon_locator.models import Anchor, BeaconIdentity


GROUP = uuid.UUID("fda50693-a4e2-4fb1-afcf-c6eb07647825")


@pytest.fixture
def config(tmp_path) -> ConfigManager:
    config = ConfigManager(str(tmp_path / "config" / "config.yaml"))
    config.config["paths"]["anchor_db"] = str(tmp_path / "beacon" / "anchors.csv")
    return config


def _anchor(minor: int, lat: float = 22.3, lon: float = 114.17) -> Anchor:
    return Anchor(identity=BeaconIdentity(GROUP, 10, minor), latitude=lat, longitude=lon)


def test_missing_database_creates_sample(config) -> None:
    store = AnchorStore(config)
    store.load()

    assert os.path.exists(config.get_anchor_db_path())
    assert len(store) == 1


def test_added_anchor_survives_reload(config) -> None:
    store = AnchorStore(config)
    store.load()
    store.add(_anchor(3, lat=22.30451, lon=114.17983))

    reloaded = AnchorStore(config)
    reloaded.load()
    anchor = reloaded.get(BeaconIdentity(GROUP, 10, 3))

    assert anchor is not None
    assert anchor.latitude == pytest.approx(22.30451)
    assert anchor.longitude == pytest.approx(114.17983)
    assert len(reloaded) == 2


def test_update_and_delete(config) -> None:
    store = AnchorStore(config)
    store.load()
    ident = BeaconIdentity(GROUP, 10, 4)

    assert store.update(_anchor(4)) is False
    store.add(_anchor(4))
    assert store.update(_anchor(4, lat=22.31)) is True
    assert store.get(ident).latitude == pytest.approx(22.31)

    assert store.delete(ident) is True
    assert store.delete(ident) is False
    assert not store.has(ident)


def test_locate_merges_anchor_position(config) -> None:
    store = AnchorStore(config)
    store.load()
    store.add(_anchor(5, lat=22.5, lon=114.5))

    observation = store.locate(str(GROUP), 10, 5, rssi=-72, distance=3.5)

    assert observation is not None
    assert observation.identity == BeaconIdentity(GROUP, 10, 5)
    assert (observation.latitude, observation.longitude) == (22.5, 114.5)
    assert observation.rssi == -72
    assert observation.distance == 3.5
    assert store.locate(GROUP, 10, 99, rssi=-72, distance=3.5) is None


def test_rows_with_invalid_coordinates_are_ignored(config) -> None:
    path = config.get_anchor_db_path()
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write("uuid,major,minor,latitude,longitude,altitude\n")
        f.write(f"{GROUP},1,1,22.3,114.17,0\n")
        f.write(f"{GROUP},1,2,not-a-number,114.17,0\n")
        f.write(f"{GROUP},1,3,95.0,114.17,0\n")

    store = AnchorStore(config)
    store.load()

    assert list(store.all()) == [f"{GROUP}:1:1"]
