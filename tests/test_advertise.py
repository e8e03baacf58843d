from __future__ import annotations

import unittest
from typing import Callable
from unittest import mock

from zeroconf import Error as ZeroconfError, NonUniqueNameException

from keyshare.advertise import (
    SHARE_ERROR_HEADING,
    SHARE_ERROR_MESSAGE,
    AdvertisementError,
    AdvertisementManager,
    ClientState,
    DiscoveredService,
    GroupState,
    ZeroconfClient,
    compute_share_name,
)


class FakeGroup:
    def __init__(self, client: FakeClient, callback: Callable) -> None:
        self.client = client
        self.callback = callback
        self.error: BaseException | None = None
        self.added: list[tuple[str, str, int]] = []
        self.commits = 0
        self.resets = 0
        self.freed = False

    def add_service(self, name: str, service_type: str, port: int) -> None:
        if self.client.hub.fail_add:
            raise AdvertisementError(f"invalid service record {name!r}")
        self.added.append((name, service_type, port))

    def commit(self) -> None:
        self.commits += 1

    def reset(self) -> None:
        self.resets += 1

    def free(self) -> None:
        self.freed = True

    def emit(self, state: GroupState) -> None:
        self.callback(self, state)


class FakeClient:
    def __init__(self, hub: FakeHub, callback: Callable) -> None:
        self.hub = hub
        self.callback = callback
        self.error: BaseException | None = None
        self.groups: list[FakeGroup] = []
        self.started = False
        self.freed = False

    @property
    def disconnected(self) -> bool:
        return self.error is None

    def start(self) -> None:
        self.started = True

    def new_group(self, callback: Callable) -> FakeGroup:
        group = FakeGroup(self, callback)
        self.groups.append(group)
        return group

    def free(self) -> None:
        self.freed = True

    def emit(self, state: ClientState) -> None:
        self.callback(self, state)

    @property
    def group(self) -> FakeGroup:
        return self.groups[-1]


class FakeHub:
    """Client factory recording every client it hands out."""

    def __init__(self) -> None:
        self.clients: list[FakeClient] = []
        self.fail_create = False
        self.fail_add = False

    def __call__(self, callback: Callable) -> FakeClient:
        if self.fail_create:
            raise OSError("discovery daemon not running")
        client = FakeClient(self, callback)
        self.clients.append(client)
        return client

    @property
    def client(self) -> FakeClient:
        return self.clients[-1]


class FakeTimer:
    def __init__(self, delay: float, callback: Callable[[], None]) -> None:
        self.delay = delay
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        if not self.cancelled:
            self.callback()


class RecordingScheduler:
    def __init__(self) -> None:
        self.timers: list[FakeTimer] = []

    def __call__(self, delay: float, callback: Callable[[], None]) -> FakeTimer:
        timer = FakeTimer(delay, callback)
        self.timers.append(timer)
        return timer


class AdvertisementManagerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.hub = FakeHub()
        self.scheduler = RecordingScheduler()
        self.notifications: list[tuple[str, str]] = []
        self.manager = AdvertisementManager(
            11371,
            client_factory=self.hub,
            on_error=lambda heading, message: self.notifications.append((heading, message)),
            display_name="Alice",
            scheduler=self.scheduler,
        )

    def _publish(self) -> FakeGroup:
        self.assertTrue(self.manager.start())
        self.hub.client.emit(ClientState.RUNNING)
        return self.hub.client.group

    def test_start_creates_client(self) -> None:
        self.assertTrue(self.manager.start())

        self.assertEqual(self.manager.share_name, "Alice's encryption keys")
        self.assertEqual(len(self.hub.clients), 1)
        self.assertTrue(self.hub.client.started)
        self.assertIs(self.manager.client_state, ClientState.CONNECTING)
        self.assertFalse(self.manager.is_published)

    def test_start_twice_keeps_one_client(self) -> None:
        self.manager.start()
        self.assertTrue(self.manager.start())
        self.assertEqual(len(self.hub.clients), 1)

    def test_running_client_registers_service(self) -> None:
        group = self._publish()

        self.assertEqual(group.added, [("Alice's encryption keys", "_pgpkey-hkp._tcp", 11371)])
        self.assertEqual(group.commits, 1)
        self.assertIs(self.manager.group_state, GroupState.REGISTERING)

        group.emit(GroupState.REGISTERED)
        self.assertTrue(self.manager.is_published)
        self.assertEqual(self.notifications, [])

    def test_port_provider_is_called_at_registration(self) -> None:
        manager = AdvertisementManager(lambda: 40123, client_factory=self.hub, display_name="Alice")
        manager.start()
        self.hub.client.emit(ClientState.RUNNING)
        self.assertEqual(self.hub.client.group.added[0][2], 40123)
        manager.stop()

    def test_collisions_append_counter(self) -> None:
        group = self._publish()

        for _ in range(3):
            group.emit(GroupState.COLLISION)

        self.assertEqual(self.manager.collisions, 3)
        self.assertEqual(self.manager.share_name, "Alice's encryption keys #3")
        self.assertEqual(
            [name for name, _, _ in group.added],
            [
                "Alice's encryption keys",
                "Alice's encryption keys #1",
                "Alice's encryption keys #2",
                "Alice's encryption keys #3",
            ],
        )
        self.assertEqual(group.commits, 4)
        self.assertEqual(len(self.hub.clients), 1)
        self.assertEqual(len(self.hub.client.groups), 1)
        self.assertEqual(self.notifications, [])

    def test_long_names_stay_within_label_limit(self) -> None:
        manager = AdvertisementManager(11371, client_factory=self.hub, display_name="Ü" * 60)
        manager.start()
        self.hub.client.emit(ClientState.RUNNING)
        group = self.hub.client.group
        group.emit(GroupState.COLLISION)
        group.emit(GroupState.COLLISION)

        for name, _, _ in group.added:
            self.assertLessEqual(len(name.encode("utf-8")), 63)
        self.assertTrue(manager.share_name.endswith(" #2"))
        manager.stop()

    def test_group_failure_tears_down_and_notifies(self) -> None:
        group = self._publish()
        client = self.hub.client

        group.error = RuntimeError("local name conflict")
        group.emit(GroupState.FAILURE)

        self.assertEqual(self.notifications, [(SHARE_ERROR_HEADING, SHARE_ERROR_MESSAGE)])
        self.assertTrue(group.freed)
        self.assertTrue(client.freed)
        self.assertIsNone(self.manager.share_name)
        self.assertEqual(self.scheduler.timers, [])

    def test_add_failure_tears_down_without_retry(self) -> None:
        self.hub.fail_add = True
        self.manager.start()
        self.hub.client.emit(ClientState.RUNNING)

        self.assertEqual(self.notifications, [(SHARE_ERROR_HEADING, SHARE_ERROR_MESSAGE)])
        self.assertTrue(self.hub.client.freed)
        self.assertEqual(self.scheduler.timers, [])

    def test_client_failure_notifies_and_restarts(self) -> None:
        group = self._publish()
        group.emit(GroupState.COLLISION)
        client = self.hub.client

        client.error = OSError("daemon went away")
        client.emit(ClientState.FAILURE)

        self.assertEqual(self.notifications, [(SHARE_ERROR_HEADING, SHARE_ERROR_MESSAGE)])
        self.assertTrue(client.freed)
        self.assertEqual(len(self.scheduler.timers), 1)
        self.assertEqual(self.scheduler.timers[0].delay, 1.0)
        self.assertEqual(len(self.hub.clients), 1)

        self.scheduler.timers[0].fire()

        self.assertEqual(len(self.hub.clients), 2)
        self.assertTrue(self.hub.client.started)
        self.assertEqual(self.manager.collisions, 0)
        self.assertEqual(self.manager.share_name, "Alice's encryption keys")

    def test_clean_disconnect_restarts_silently(self) -> None:
        self._publish()
        self.hub.client.emit(ClientState.FAILURE)

        self.assertEqual(self.notifications, [])
        self.assertEqual(len(self.scheduler.timers), 1)

    def test_failed_restart_is_rescheduled(self) -> None:
        self._publish()
        self.hub.client.emit(ClientState.FAILURE)

        self.hub.fail_create = True
        self.scheduler.timers[0].fire()
        self.assertEqual(len(self.scheduler.timers), 2)

        self.hub.fail_create = False
        self.scheduler.timers[1].fire()
        self.assertEqual(len(self.hub.clients), 2)

    def test_stop_cancels_pending_restart(self) -> None:
        self._publish()
        self.hub.client.emit(ClientState.FAILURE)
        timer = self.scheduler.timers[0]

        self.manager.stop()

        self.assertTrue(timer.cancelled)
        timer.callback()
        self.assertEqual(len(self.hub.clients), 1)

    def test_client_collision_resets_group(self) -> None:
        group = self._publish()
        group.emit(GroupState.REGISTERED)

        self.hub.client.emit(ClientState.COLLISION)
        self.assertEqual(group.resets, 1)
        self.assertIs(self.manager.group_state, GroupState.UNCOMMITTED)

        self.hub.client.emit(ClientState.RUNNING)
        self.assertEqual(len(group.added), 2)
        self.assertEqual(len(self.hub.client.groups), 1)

    def test_stale_callbacks_are_ignored(self) -> None:
        group = self._publish()
        old_client = self.hub.client

        self.manager.stop()
        self.manager.start()

        old_client.emit(ClientState.RUNNING)
        group.emit(GroupState.COLLISION)

        self.assertEqual(len(old_client.groups), 1)
        self.assertEqual(self.manager.collisions, 0)
        self.assertIs(self.manager.client_state, ClientState.CONNECTING)

    def test_stop_is_silent_and_idempotent(self) -> None:
        self.manager.stop()

        group = self._publish()
        client = self.hub.client
        self.manager.stop()
        self.manager.stop()

        self.assertTrue(group.freed)
        self.assertTrue(client.freed)
        self.assertIsNone(self.manager.share_name)
        self.assertFalse(self.manager.is_active)
        self.assertEqual(self.notifications, [])

    def test_start_fails_without_client(self) -> None:
        self.hub.fail_create = True

        self.assertFalse(self.manager.start())
        self.assertFalse(self.manager.is_active)
        self.assertIsNone(self.manager.share_name)


class ShareNameTests(unittest.TestCase):
    def test_compute_share_name(self) -> None:
        self.assertEqual(compute_share_name("Alice"), "Alice's encryption keys")
        self.assertEqual(compute_share_name("Alice", 2), "Alice's encryption keys #2")

    def test_suffix_survives_truncation(self) -> None:
        name = compute_share_name("x" * 100, 12)
        self.assertEqual(len(name.encode("utf-8")), 63)
        self.assertTrue(name.endswith("x #12"))


class ZeroconfTransportTests(unittest.TestCase):
    def setUp(self) -> None:
        self.client_states: list[ClientState] = []
        self.group_states: list[GroupState] = []
        self.zc = mock.Mock()
        self.client = ZeroconfClient(
            lambda client, state: self.client_states.append(state),
            zeroconf_factory=mock.Mock(return_value=self.zc),
        )

    def _group(self):
        self.client._connect()
        return self.client.new_group(lambda group, state: self.group_states.append(state))

    def test_connect_reports_running(self) -> None:
        self.client._connect()
        self.assertEqual(self.client_states, [ClientState.RUNNING])
        self.assertIs(self.client.zeroconf, self.zc)

    def test_connect_failure_is_not_a_clean_disconnect(self) -> None:
        client = ZeroconfClient(
            lambda client, state: self.client_states.append(state),
            zeroconf_factory=mock.Mock(side_effect=OSError("no multicast")),
        )
        client._connect()

        self.assertEqual(self.client_states, [ClientState.FAILURE])
        self.assertFalse(client.disconnected)

    def test_responder_errors_fail_the_client(self) -> None:
        for error in (RuntimeError("event loop unavailable"), ZeroconfError("bad interface")):
            states: list[ClientState] = []
            client = ZeroconfClient(
                lambda client, state: states.append(state),
                zeroconf_factory=mock.Mock(side_effect=error),
            )
            client._connect()

            self.assertEqual(states, [ClientState.FAILURE])
            self.assertIs(client.error, error)
            self.assertFalse(client.disconnected)

    def test_responder_error_triggers_restart(self) -> None:
        scheduler = RecordingScheduler()
        factory = mock.Mock(side_effect=[RuntimeError("event loop unavailable"), self.zc])
        manager = AdvertisementManager(
            11371,
            client_factory=lambda callback: ZeroconfClient(callback, zeroconf_factory=factory),
            on_error=lambda heading, message: None,
            display_name="Alice",
            scheduler=scheduler,
        )
        with mock.patch.object(ZeroconfClient, "start", ZeroconfClient._connect):
            manager.start()
            self.assertEqual(len(scheduler.timers), 1)

            with mock.patch("keyshare.advertise.local_addresses", return_value=["192.0.2.10"]):
                with mock.patch("keyshare.advertise.threading.Thread"):
                    scheduler.timers[0].fire()

        self.assertIs(manager.client_state, ClientState.RUNNING)
        self.assertIs(manager.group_state, GroupState.REGISTERING)
        manager.stop()

    def test_new_group_requires_running_client(self) -> None:
        with self.assertRaises(AdvertisementError):
            self.client.new_group(lambda group, state: None)

    def test_commit_requires_a_record(self) -> None:
        group = self._group()
        with self.assertRaises(AdvertisementError):
            group.commit()

    @mock.patch("keyshare.advertise.local_addresses", return_value=["192.0.2.10"])
    def test_register_and_reset(self, _addresses: mock.Mock) -> None:
        group = self._group()
        group.add_service("Alice's encryption keys", "_pgpkey-hkp._tcp", 11371)
        info = group._pending

        self.assertEqual(info.name, "Alice's encryption keys._pgpkey-hkp._tcp.local.")
        self.assertEqual(info.type, "_pgpkey-hkp._tcp.local.")
        self.assertEqual(info.port, 11371)

        group._register(self.zc, info)
        self.zc.register_service.assert_called_once_with(info, allow_name_change=False)
        self.assertEqual(self.group_states, [GroupState.REGISTERED])

        group.reset()
        self.zc.unregister_service.assert_called_once_with(info)

    @mock.patch("keyshare.advertise.local_addresses", return_value=["192.0.2.10"])
    def test_name_conflict_is_a_collision(self, _addresses: mock.Mock) -> None:
        group = self._group()
        group.add_service("Alice's encryption keys", "_pgpkey-hkp._tcp", 11371)
        self.zc.register_service.side_effect = NonUniqueNameException()

        group._register(self.zc, group._pending)
        self.assertEqual(self.group_states, [GroupState.COLLISION])

    @mock.patch("keyshare.advertise.local_addresses", return_value=["192.0.2.10"])
    def test_socket_errors_fail_the_client(self, _addresses: mock.Mock) -> None:
        group = self._group()
        group.add_service("Alice's encryption keys", "_pgpkey-hkp._tcp", 11371)
        self.zc.register_service.side_effect = OSError("network is down")

        group._register(self.zc, group._pending)
        self.assertEqual(self.group_states, [])
        self.assertEqual(self.client_states, [ClientState.RUNNING, ClientState.FAILURE])
        self.assertFalse(self.client.disconnected)

    def test_free_closes_zeroconf(self) -> None:
        group = self._group()
        group.free()
        self.client.free()

        self.zc.close.assert_called_once_with()
        self.assertIsNone(self.client.zeroconf)


class DiscoveredServiceTests(unittest.TestCase):
    def test_url_prefers_addresses(self) -> None:
        service = DiscoveredService("Alice's encryption keys", "alice-laptop.local.", 11371, ("192.0.2.10",))
        self.assertEqual(service.url, "http://192.0.2.10:11371")

    def test_url_falls_back_to_host(self) -> None:
        service = DiscoveredService("Alice's encryption keys", "alice-laptop.local.", 11371)
        self.assertEqual(service.url, "http://alice-laptop.local:11371")


if __name__ == "__main__":
    unittest.main()
