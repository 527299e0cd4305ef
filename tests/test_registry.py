import logging

import pytest

from bayernluft_bridge.config import DeviceConfig
from bayernluft_bridge.registry import DeviceRegistry, derive_device_id, normalize


def test_derive_device_id_is_deterministic() -> None:
    assert derive_device_id("Garage") == "Garage"
    assert derive_device_id("Garage") == derive_device_id("Garage")
    assert derive_device_id("attic-unit_2") == "attic-unit_2"


def test_derive_device_id_transliterates_umlauts() -> None:
    assert derive_device_id("Küche") == "Kueche"
    assert derive_device_id("Straße") == "Strasse"
    assert derive_device_id("ÄÖÜ äöü") == "AeOeUe_aeoeue"


def test_derive_device_id_replaces_every_illegal_character() -> None:
    # Each offending character becomes its own underscore, not just the first one.
    assert derive_device_id("Living Room #2") == "Living_Room__2"
    assert derive_device_id("a.b.c") == "a_b_c"
    assert derive_device_id("Bad/Bath?") == "Bad_Bath_"


def test_normalize_keeps_valid_entries() -> None:
    devices = normalize(
        [
            DeviceConfig(name="Garage", ip="192.168.1.50", port=80),
            DeviceConfig(name="  Küche ", ip=" 192.168.1.51 ", port=8080),
        ]
    )

    assert list(devices) == ["Garage", "Kueche"]
    kitchen = devices["Kueche"]
    assert kitchen.name == "Küche"
    assert kitchen.host == "192.168.1.51"
    assert kitchen.port == 8080
    assert kitchen.reachable is None


def test_normalize_skips_disabled_entries_quietly(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.DEBUG, logger="bayernluft_bridge.registry")

    devices = normalize([DeviceConfig(name="Garage", ip="10.0.0.2", enabled=False)])

    assert devices == {}
    assert not [r for r in caplog.records if r.levelno >= logging.WARNING]


@pytest.mark.parametrize(
    "entry",
    [
        DeviceConfig(name="", ip="10.0.0.2"),
        DeviceConfig(name="   ", ip="10.0.0.2"),
        DeviceConfig(name="Garage", ip=""),
        DeviceConfig(name="Garage", ip="10.0.0.2", port=None),
        DeviceConfig(name="Garage", ip="10.0.0.2", port=70000),
        DeviceConfig(name="Garage", ip="10.0.0.2", port=-1),
    ],
)
def test_normalize_excludes_invalid_entries(
    entry: DeviceConfig, caplog: pytest.LogCaptureFixture
) -> None:
    caplog.set_level(logging.ERROR, logger="bayernluft_bridge.registry")

    assert normalize([entry]) == {}
    assert any(record.levelno == logging.ERROR for record in caplog.records)


def test_normalize_accepts_port_bounds() -> None:
    devices = normalize(
        [
            DeviceConfig(name="Low", ip="10.0.0.2", port=0),
            DeviceConfig(name="High", ip="10.0.0.3", port=65535),
        ]
    )
    assert set(devices) == {"Low", "High"}


def test_normalize_duplicate_ids_keep_later_entry(
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.WARNING, logger="bayernluft_bridge.registry")

    devices = normalize(
        [
            DeviceConfig(name="Living Room", ip="10.0.0.2"),
            DeviceConfig(name="Living-Room", ip="10.0.0.3"),
            DeviceConfig(name="Living?Room", ip="10.0.0.4"),
        ]
    )

    assert set(devices) == {"Living_Room", "Living-Room"}
    assert devices["Living_Room"].host == "10.0.0.4"
    assert any("share id" in record.getMessage() for record in caplog.records)


def test_registry_tracks_reachability() -> None:
    registry = DeviceRegistry.from_config(
        [
            DeviceConfig(name="Garage", ip="10.0.0.2"),
            DeviceConfig(name="Attic", ip="10.0.0.3"),
        ]
    )

    assert len(registry) == 2
    assert "Garage" in registry
    assert [device.id for device in registry] == ["Garage", "Attic"]

    assert registry.set_reachable("Garage", True) is None
    assert registry.set_reachable("Garage", False) is True
    assert registry.get("Garage").reachable is False

    with pytest.raises(KeyError):
        registry.set_reachable("Cellar", True)


def test_registry_get_unknown_returns_none() -> None:
    registry = DeviceRegistry.from_config([])
    assert registry.get("Garage") is None
    assert registry.devices() == []
