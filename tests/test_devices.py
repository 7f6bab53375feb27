from __future__ import annotations

import pytest

from nova_voice.audio.devices import MICROPHONE, SPEAKER, DeviceArbiter
from nova_voice.core.errors import DeviceBusyError


def test_exclusive_claims_conflict():
    arbiter = DeviceArbiter()
    arbiter.claim(MICROPHONE, "capture")
    with pytest.raises(DeviceBusyError) as info:
        arbiter.claim(MICROPHONE, "other")
    assert info.value.holders == ["capture"]
    assert arbiter.owners(MICROPHONE) == ["capture"]


def test_shared_claims_coexist_but_not_with_exclusive():
    arbiter = DeviceArbiter()
    arbiter.claim(MICROPHONE, "barge-in", exclusive=False)
    arbiter.claim(MICROPHONE, "meter", exclusive=False)
    assert not arbiter.is_exclusive(MICROPHONE)
    with pytest.raises(DeviceBusyError):
        arbiter.claim(MICROPHONE, "capture", exclusive=True)

    other = DeviceArbiter()
    other.claim(MICROPHONE, "capture", exclusive=True)
    with pytest.raises(DeviceBusyError):
        other.claim(MICROPHONE, "barge-in", exclusive=False)


def test_release_frees_the_resource():
    arbiter = DeviceArbiter()
    assert arbiter.release(SPEAKER, "nobody") is False
    arbiter.claim(SPEAKER, "playback")
    assert arbiter.release(SPEAKER, "playback") is True
    arbiter.claim(SPEAKER, "playback-2")
    assert arbiter.owners(SPEAKER) == ["playback-2"]


def test_resources_are_independent():
    arbiter = DeviceArbiter()
    arbiter.claim(SPEAKER, "playback")
    arbiter.claim(MICROPHONE, "capture")
    assert arbiter.is_exclusive(SPEAKER) and arbiter.is_exclusive(MICROPHONE)


def test_owner_can_reclaim():
    arbiter = DeviceArbiter()
    arbiter.claim(MICROPHONE, "capture")
    arbiter.claim(MICROPHONE, "capture")
    assert arbiter.owners(MICROPHONE) == ["capture"]
