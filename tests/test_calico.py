import pytest

from clusteragent.snap.snap import SnapError
from clusteragent.snaputil.calico import maybe_patch_calico_autodetection_method


class FakeSnap:
    def __init__(self, cni_yaml, apply_error=None):
        self.cni_yaml = cni_yaml
        self.apply_cni_called = 0
        self.apply_error = apply_error

    def read_cni_yaml(self):
        return self.cni_yaml

    def write_cni_yaml(self, manifest):
        if isinstance(manifest, bytes):
            manifest = manifest.decode("utf-8")
        self.cni_yaml = manifest

    def apply_cni(self):
        self.apply_cni_called += 1
        if self.apply_error is not None:
            raise self.apply_error


BOTH_FIRST_FOUND = """
- name: IP_AUTODETECTION_METHOD
  value: "first-found"
- name: IP6_AUTODETECTION_METHOD
  value: "first-found\""""


@pytest.mark.parametrize(
    "old_yaml, host, expected_yaml, expected_applies",
    [
        (
            BOTH_FIRST_FOUND,
            "10.10.10.10",
            """
- name: IP_AUTODETECTION_METHOD
  value: "can-reach=10.10.10.10"
- name: IP6_AUTODETECTION_METHOD
  value: "first-found\"""",
            1,
        ),
        (
            BOTH_FIRST_FOUND,
            "2001:0db8:85a3:0000:0000:8a2e:0370:7334",
            """
- name: IP_AUTODETECTION_METHOD
  value: "first-found"
- name: IP6_AUTODETECTION_METHOD
  value: "can-reach=2001:0db8:85a3:0000:0000:8a2e:0370:7334\"""",
            1,
        ),
        (
            """
- name: IP_AUTODETECTION_METHOD
  value: "can-reach=1.1.1.1"
- name: IP6_AUTODETECTION_METHOD
  value: "first-found\"""",
            "10.10.10.10",
            """
- name: IP_AUTODETECTION_METHOD
  value: "can-reach=1.1.1.1"
- name: IP6_AUTODETECTION_METHOD
  value: "first-found\"""",
            0,
        ),
        (
            """
- name: IP_AUTODETECTION_METHOD
  value: "first-found"
- name: IP6_AUTODETECTION_METHOD
  value: "can-reach=2001:0db8:85a3:0000:0000:8a2e:0370:7334\"""",
            "2001:0db8:85a3:0000:0000:8a2e:0370:7335",
            """
- name: IP_AUTODETECTION_METHOD
  value: "first-found"
- name: IP6_AUTODETECTION_METHOD
  value: "can-reach=2001:0db8:85a3:0000:0000:8a2e:0370:7334\"""",
            0,
        ),
        (
            """
- name: IP6_AUTODETECTION_METHOD
  value: "first-found\"""",
            "1.1.1.1",
            """
- name: IP6_AUTODETECTION_METHOD
  value: "first-found\"""",
            0,
        ),
        (
            """
- name: IP_AUTODETECTION_METHOD
  value: "first-found\"""",
            "2001:0db8:85a3:0000:0000:8a2e:0370:7335",
            """
- name: IP_AUTODETECTION_METHOD
  value: "first-found\"""",
            0,
        ),
    ],
    ids=[
        "ipv4",
        "ipv6",
        "ipv4-not-first-found",
        "ipv6-not-first-found",
        "ipv4-no-autodetection",
        "ipv6-no-autodetection",
    ],
)
def test_patch(old_yaml, host, expected_yaml, expected_applies):
    snap = FakeSnap(old_yaml)
    maybe_patch_calico_autodetection_method(snap, host, True)
    assert snap.cni_yaml == expected_yaml
    assert snap.apply_cni_called == expected_applies


def test_patch_without_apply():
    snap = FakeSnap(BOTH_FIRST_FOUND)
    maybe_patch_calico_autodetection_method(snap, "10.10.10.10", False)
    assert 'value: "can-reach=10.10.10.10"' in snap.cni_yaml
    assert snap.apply_cni_called == 0


def test_bad_ip():
    snap = FakeSnap(BOTH_FIRST_FOUND)
    with pytest.raises(ValueError, match="badIPRepresentation"):
        maybe_patch_calico_autodetection_method(snap, "badIPRepresentation", True)
    assert snap.cni_yaml == BOTH_FIRST_FOUND


def test_apply_failure_is_raised():
    snap = FakeSnap(BOTH_FIRST_FOUND, apply_error=SnapError("boom"))
    with pytest.raises(SnapError, match="failed to apply cni configuration"):
        maybe_patch_calico_autodetection_method(snap, "10.10.10.10", True)