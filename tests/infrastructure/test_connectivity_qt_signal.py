from __future__ import annotations

import pytest

QtNetwork = pytest.importorskip("PySide6.QtNetwork")

from fieldsync.infrastructure.connectivity_qt import QtConnectivitySignal, is_reachable  # noqa: E402

Reachability = QtNetwork.QNetworkInformation.Reachability


class _FakeSignal:
    def __init__(self) -> None:
        self.slots: list = []

    def connect(self, slot) -> None:
        self.slots.append(slot)

    def disconnect(self, slot) -> None:
        if slot not in self.slots:
            raise RuntimeError("not connected")
        self.slots.remove(slot)

    def emit(self, value) -> None:
        for slot in list(self.slots):
            slot(value)


class _FakeInformation:
    def __init__(self, reachability) -> None:
        self._reachability = reachability
        self.reachabilityChanged = _FakeSignal()

    def reachability(self):
        return self._reachability


@pytest.mark.ui
def test_only_online_reachability_counts_as_connected() -> None:
    assert is_reachable(Reachability.Online)
    assert not is_reachable(Reachability.Local)
    assert not is_reachable(Reachability.Disconnected)


@pytest.mark.ui
def test_subscribe_reports_current_state_and_changes() -> None:
    information = _FakeInformation(Reachability.Disconnected)
    seen: list[bool] = []

    unsubscribe = QtConnectivitySignal(information).subscribe(seen.append)
    information.reachabilityChanged.emit(Reachability.Online)
    unsubscribe()
    information.reachabilityChanged.emit(Reachability.Disconnected)
    unsubscribe()

    assert seen == [False, True]
