from __future__ import annotations

import math
import uuid

import pytest

from beacon_locator.models import (
    Anchor,
    BeaconIdentity,
    BeaconObservation,
    LocationUpdate,
    PositionEstimate,
)


GROUP = uuid.UUID("e2c56db5-dffb-48d2-b060-d0f5a71096e0")


def _obs(**overrides) -> BeaconObservation:
    fields = dict(uuid=GROUP, major=1, minor=2, rssi=-60, distance=1.0, latitude=22.3, longitude=114.17)
    fields.update(overrides)
    return BeaconObservation(**fields)


@pytest.mark.parametrize("distance", [-0.5, math.inf, math.nan])
def test_observation_rejects_invalid_distance(distance) -> None:
    with pytest.raises(ValueError):
        _obs(distance=distance)


def test_observation_allows_unknown_distance() -> None:
    obs = _obs(distance=None)
    assert not obs.has_distance
    assert obs.identity == BeaconIdentity(GROUP, 1, 2)


@pytest.mark.parametrize("field", ["major", "minor"])
def test_sub_identifiers_are_16_bit(field) -> None:
    with pytest.raises(ValueError):
        _obs(**{field: 65536})
    assert getattr(_obs(**{field: 65535}), field) == 65535


def test_identity_key_round_trip() -> None:
    ident = BeaconIdentity(str(GROUP), 3, 4)
    assert ident.uuid == GROUP
    assert BeaconIdentity.parse(ident.key) == ident
    with pytest.raises(ValueError):
        BeaconIdentity.parse("only:two")


def test_position_estimate_must_be_finite() -> None:
    with pytest.raises(ValueError):
        PositionEstimate(math.nan, 114.0, 1.0, 0)
    with pytest.raises(ValueError):
        PositionEstimate(22.0, 114.0, -1.0, 0)


def test_anchor_validates_coordinates() -> None:
    with pytest.raises(ValueError):
        Anchor(BeaconIdentity(GROUP, 1, 1), latitude=91.0, longitude=0.0)
    with pytest.raises(ValueError):
        Anchor(BeaconIdentity(GROUP, 1, 1), latitude=0.0, longitude=-181.0)


def test_location_update_serialization() -> None:
    update = LocationUpdate(position=None, beacons=[_obs()], error="Error calculating position: boom")

    assert isinstance(update.beacons, tuple)
    d = update.to_dict()
    assert d["position"] is None
    assert d["beacons"][0]["uuid"] == str(GROUP)
    assert d["error"] == "Error calculating position: boom"
    assert "error" not in LocationUpdate.initial().to_dict()
