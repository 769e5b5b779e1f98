"""Known waiting system calls on 64-bit Windows, by OS version."""

from __future__ import annotations

from enum import Enum


class Syscall(Enum):
    """System calls that indicate a thread is waiting."""

    NtWaitForAlertByThreadId = "NtWaitForAlertByThreadId"
    NtWaitForDebugEvent = "NtWaitForDebugEvent"
    NtWaitForKeyedEvent = "NtWaitForKeyedEvent"
    NtWaitForMultipleObjects = "NtWaitForMultipleObjects"
    NtWaitForMultipleObjects32 = "NtWaitForMultipleObjects32"
    NtWaitForSingleObject = "NtWaitForSingleObject"
    NtWaitForWnfNotifications = "NtWaitForWnfNotifications"
    NtWaitForWorkViaWorkerFactory = "NtWaitForWorkViaWorkerFactory"
    NtWaitHighEventPair = "NtWaitHighEventPair"
    NtWaitLowEventPair = "NtWaitLowEventPair"


_S = Syscall
_BASE = (_S.NtWaitForSingleObject, _S.NtWaitForMultipleObjects32, _S.NtWaitForMultipleObjects)
_TAIL = (_S.NtWaitForDebugEvent, _S.NtWaitForKeyedEvent, _S.NtWaitForWorkViaWorkerFactory,
         _S.NtWaitHighEventPair, _S.NtWaitLowEventPair)
_TAIL_ALERT = (_S.NtWaitForAlertByThreadId,) + _TAIL


def _numbers(base: tuple[int, int, int], first: int, calls) -> dict[int, Syscall]:
    table = dict(zip(base, _BASE))
    table.update((first + offset, call) for offset, call in enumerate(calls))
    return table


_TABLE: dict[tuple[int, int, int], dict[int, Syscall]] = {
    (6, 0, 6000): _numbers((1, 23, 88), 392, _TAIL),
    (6, 0, 6001): _numbers((1, 23, 88), 385, _TAIL),
    (6, 0, 6002): _numbers((1, 23, 88), 385, _TAIL),
    (6, 1, 7600): _numbers((1, 23, 88), 395, _TAIL),
    (6, 1, 7601): _numbers((1, 23, 88), 395, _TAIL),
    (6, 2, 9200): _numbers(
        (2, 24, 89), 422,
        (_S.NtWaitForAlertByThreadId, _S.NtWaitForDebugEvent, _S.NtWaitForKeyedEvent,
         _S.NtWaitForWnfNotifications, _S.NtWaitForWorkViaWorkerFactory,
         _S.NtWaitHighEventPair, _S.NtWaitLowEventPair)),
    (6, 3, 9600): _numbers((3, 25, 90), 427, _TAIL_ALERT),
    (10, 0, 10240): _numbers((4, 26, 91), 435, _TAIL_ALERT),
    (10, 0, 10586): _numbers((4, 26, 91), 438, _TAIL_ALERT),
    (10, 0, 14393): _numbers((4, 26, 91), 444, _TAIL_ALERT),
    (10, 0, 15063): _numbers((4, 26, 91), 450, _TAIL_ALERT),
    (10, 0, 16299): _numbers((4, 26, 91), 454, _TAIL_ALERT),
    (10, 0, 17134): _numbers((4, 26, 91), 456, _TAIL_ALERT),
    (10, 0, 17763): _numbers((4, 26, 91), 457, _TAIL_ALERT),
    (10, 0, 18362): _numbers((4, 26, 91), 458, _TAIL_ALERT),
}


def lookup_syscall(major: int, minor: int, build: int, syscall: int) -> Syscall | None:
    """Returns the waiting syscall with this number on this Windows version, if known."""
    return _TABLE.get((major, minor, build), {}).get(syscall)


def is_waiting_syscall(syscall: Syscall | None) -> bool:
    """True when a looked-up syscall means the thread is idle."""
    return isinstance(syscall, Syscall)