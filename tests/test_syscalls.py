import pytest

from samplespy.syscalls import Syscall, is_waiting_syscall, lookup_syscall


@pytest.mark.parametrize("version, number, expected", [
    ((6, 0, 6000, ), 1, Syscall.NtWaitForSingleObject),
    ((6, 0, 6000), 392, Syscall.NtWaitForDebugEvent),
    ((6, 0, 6001), 389, Syscall.NtWaitLowEventPair),
    ((6, 1, 7601), 88, Syscall.NtWaitForMultipleObjects),
    ((6, 2, 9200), 425, Syscall.NtWaitForWnfNotifications),
    ((6, 2, 9200), 428, Syscall.NtWaitLowEventPair),
    ((6, 3, 9600), 25, Syscall.NtWaitForMultipleObjects32),
    ((10, 0, 10240), 435, Syscall.NtWaitForAlertByThreadId),
    ((10, 0, 17763), 460, Syscall.NtWaitForWorkViaWorkerFactory),
    ((10, 0, 18362), 4, Syscall.NtWaitForSingleObject),
    ((10, 0, 18362), 463, Syscall.NtWaitLowEventPair),
])
def test_known_syscalls(version, number, expected):
    assert lookup_syscall(*version, number) is expected


def test_unknown_number_returns_none():
    assert lookup_syscall(10, 0, 18362, 5) is None


def test_unknown_build_returns_none():
    assert lookup_syscall(10, 0, 19041, 4) is None


def test_wnf_only_on_windows_8():
    builds = [(6, 0, 6000), (6, 1, 7600), (6, 2, 9200), (6, 3, 9600), (10, 0, 18362)]
    found = {b for b in builds
             for n in range(0, 500)
             if lookup_syscall(*b, n) is Syscall.NtWaitForWnfNotifications}
    assert found == {(6, 2, 9200)}


def test_each_build_maps_numbers_to_distinct_syscalls():
    for build in [(6, 0, 6002), (10, 0, 14393), (10, 0, 16299)]:
        seen = [lookup_syscall(*build, n) for n in range(0, 500)]
        hits = [s for s in seen if s is not None]
        assert len(hits) == len(set(hits))


def test_is_waiting_syscall():
    assert is_waiting_syscall(lookup_syscall(10, 0, 17134, 456)) is True
    assert is_waiting_syscall(lookup_syscall(10, 0, 17134, 1)) is False
    assert is_waiting_syscall(None) is False