"""Tests for the bleak scanning adapter."""

from types import SimpleNamespace

import pytest

from treadsync import transport as transport_module
from treadsync.link import is_likely_treadmill
from treadsync.transport import BleakTransport


def fake_scanner(devices):
    """BleakScanner stand-in that offers ``(device, adv)`` pairs to the filter."""

    class _Scanner:
        @staticmethod
        async def find_device_by_filter(filterfunc, timeout):
            for device, adv in devices:
                if filterfunc(device, adv):
                    return device
            return None

    return _Scanner


def advert(local_name=None, service_uuids=()):
    return SimpleNamespace(local_name=local_name, service_uuids=list(service_uuids))


@pytest.mark.asyncio
async def test_name_taken_from_advertisement(monkeypatch):
    device = SimpleNamespace(address="C4:BE:84:00:11:22", name=None)
    monkeypatch.setattr(
        transport_module,
        "BleakScanner",
        fake_scanner([(device, advert("LifeSpan DT3-BT"))]),
    )

    found = await BleakTransport().find_device(
        lambda name, uuids, address: is_likely_treadmill(name), timeout=1
    )

    assert found.address == device.address
    assert found.name == "LifeSpan DT3-BT"
    assert found.handle is device


@pytest.mark.asyncio
async def test_device_name_preferred(monkeypatch):
    device = SimpleNamespace(address="C4:BE:84:00:11:22", name="LifeSpan TR1200B")
    monkeypatch.setattr(
        transport_module,
        "BleakScanner",
        fake_scanner([(device, advert("LS"))]),
    )

    found = await BleakTransport().find_device(
        lambda name, uuids, address: is_likely_treadmill(name), timeout=1
    )
    assert found.name == "LifeSpan TR1200B"


@pytest.mark.asyncio
async def test_no_match(monkeypatch):
    headphones = SimpleNamespace(address="AA:AA", name="Headphones")
    monkeypatch.setattr(
        transport_module, "BleakScanner", fake_scanner([(headphones, advert())])
    )

    found = await BleakTransport().find_device(
        lambda name, uuids, address: is_likely_treadmill(name), timeout=1
    )
    assert found is None
