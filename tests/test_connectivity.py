# =============================================================================
# Connectivity Monitor Tests
# =============================================================================

import asyncio

import pytest

from mailmirror.config import ConnectivityConfig
from mailmirror.sync import ConnectivityMonitor, PipelineManager, TcpProbe


class FakeProbe:
    def __init__(self, online=True):
        self.online = online
        self.calls = 0

    async def is_online(self):
        self.calls += 1
        if isinstance(self.online, Exception):
            raise self.online
        return self.online


class RecordingManager(PipelineManager):
    def __init__(self, state):
        super().__init__(state)
        self.calls = []

    def pause_all(self):
        self.calls.append("pause")
        super().pause_all()

    def resume_all(self):
        self.calls.append("resume")
        super().resume_all()


@pytest.fixture
def manager(mail_state):
    return RecordingManager(mail_state)


async def test_going_offline_pauses_and_back_online_resumes(manager, mail_state):
    probe = FakeProbe(online=True)
    monitor = ConnectivityMonitor(probe, manager)
    changes = []

    async def on_change(online):
        changes.append(online)

    monitor.on_change = on_change

    assert await monitor.check() is True
    assert manager.calls == []

    probe.online = False
    assert await monitor.check() is False
    assert mail_state.online is False
    assert not monitor.online

    # No transition, no second pause
    await monitor.check()

    probe.online = True
    await monitor.check()

    assert manager.calls == ["pause", "resume"]
    assert changes == [False, True]
    assert mail_state.online is True


async def test_probe_exception_counts_as_offline(manager, mail_state):
    monitor = ConnectivityMonitor(FakeProbe(online=OSError("no route")), manager)

    assert await monitor.check() is False
    assert manager.calls == ["pause"]


async def test_failing_callback_does_not_stop_monitor(manager):
    probe = FakeProbe(online=False)
    monitor = ConnectivityMonitor(probe, manager)

    async def on_change(online):
        raise RuntimeError("ui gone")

    monitor.on_change = on_change
    assert await monitor.check() is False
    assert manager.calls == ["pause"]


async def test_start_polls_until_stopped(manager):
    probe = FakeProbe()
    monitor = ConnectivityMonitor(probe, manager, interval=0.01)

    await monitor.start()
    assert monitor.is_running
    await asyncio.sleep(0.035)
    await monitor.stop()

    assert not monitor.is_running
    calls = probe.calls
    assert calls >= 2
    await asyncio.sleep(0.02)
    assert probe.calls == calls


async def test_tcp_probe_reports_closed_port_offline():
    # Nothing listens on port 9 of localhost in a test environment
    probe = TcpProbe("127.0.0.1", 9, timeout=0.5)
    assert await probe.is_online() is False


async def test_tcp_probe_reports_listening_server_online():
    server = await asyncio.start_server(lambda r, w: w.close(), "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    try:
        assert await TcpProbe("127.0.0.1", port, timeout=1.0).is_online() is True
    finally:
        server.close()
        await server.wait_closed()


def test_probe_from_config():
    probe = TcpProbe.from_config(ConnectivityConfig(probe_host="10.0.0.1", probe_port=443, timeout_seconds=2.0))
    assert (probe.host, probe.port, probe.timeout) == ("10.0.0.1", 443, 2.0)
