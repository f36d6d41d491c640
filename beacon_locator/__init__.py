"""Beacon Locator package.

This package provides:
- PositionCalculator: weighted-centroid / multilateration positioning from beacon distances
- LocationManager: continuous positioning pipeline publishing LocationUpdate values
- StateSlot: latest-value multicast state shared with observers
- BeaconScanner / MQTTBeaconScanner: beacon observation sources
- AnchorStore: CSV-backed registry of anchor beacon positions
- ConfigManager: YAML-based configuration management
"""

from .anchor_store import AnchorStore
from .broadcast import StateSlot
from .calculator import PositionCalculator, RssiModel
from .config_manager import ConfigManager
from .models import (
    Anchor,
    BeaconIdentity,
    BeaconObservation,
    CalculatorType,
    LocationUpdate,
    PositionEstimate,
    ScanBatch,
)
from .pipeline import LocationManager
from .scanner import BeaconScanner

__all__ = [
    "Anchor",
    "AnchorStore",
    "BeaconIdentity",
    "BeaconObservation",
    "BeaconScanner",
    "CalculatorType",
    "ConfigManager",
    "LocationManager",
    "LocationUpdate",
    "PositionCalculator",
    "PositionEstimate",
    "RssiModel",
    "ScanBatch",
    "StateSlot",
]
