"""DNS-SD advertisement of the HKP service.

`AdvertisementManager` is a state machine over two transport handles: a
discovery client and, once the client runs, an entry group holding the one
published service record. The transport reports phase changes through
callbacks; the manager reacts to them:

* client RUNNING   -> create the group if needed, add the record, commit
* group COLLISION  -> append " #N" to the name and register again
* group FAILURE    -> tear everything down and notify
* client COLLISION -> drop the registration, wait for the next RUNNING
* client FAILURE   -> tear down, notify unless it was a clean disconnect,
                      then restart from scratch after a short delay

`ZeroconfClient` / `ZeroconfEntryGroup` implement the transport on top of
python-zeroconf.
"""

from __future__ import annotations

import enum
import logging
import socket
import threading
import time
from dataclasses import dataclass
from typing import Callable, Protocol, Union

from zeroconf import (
    BadTypeInNameException,
    Error as ZeroconfError,
    InterfaceChoice,
    NonUniqueNameException,
    NotRunningException,
    ServiceBrowser,
    ServiceInfo,
    ServiceStateChange,
    Zeroconf,
)

from .constants import DEFAULT_RESTART_DELAY_S, HKP_SERVICE_TYPE, MAX_SERVICE_NAME_BYTES, MDNS_DOMAIN
from .utils import resolve_display_name, truncate_utf8

logger = logging.getLogger(__name__)

SHARE_NAME_FORMAT = "{name}'s encryption keys"
SHARE_ERROR_HEADING = "Couldn't share keys"
SHARE_ERROR_MESSAGE = "Can't publish discovery information on the network."


class ClientState(enum.Enum):
    CONNECTING = "connecting"
    RUNNING = "running"
    COLLISION = "collision"
    FAILURE = "failure"


class GroupState(enum.Enum):
    UNCOMMITTED = "uncommitted"
    REGISTERING = "registering"
    REGISTERED = "registered"
    COLLISION = "collision"
    FAILURE = "failure"


class AdvertisementError(RuntimeError):
    """Raised when a service record cannot be added or committed."""


ClientCallback = Callable[["DiscoveryClient", ClientState], None]
GroupCallback = Callable[["EntryGroup", GroupState], None]
ErrorCallback = Callable[[str, str], None]


class Cancellable(Protocol):
    def cancel(self) -> None:
        """Cancel the pending call."""


Scheduler = Callable[[float, Callable[[], None]], Cancellable]


class EntryGroup(Protocol):
    """A set of service records published together."""

    error: BaseException | None

    def add_service(self, name: str, service_type: str, port: int) -> None:
        """Stage one record; raises AdvertisementError when it is invalid."""

    def commit(self) -> None:
        """Start publishing staged records; the outcome arrives as a GroupState."""

    def reset(self) -> None:
        """Withdraw all published records, keeping the group usable."""

    def free(self) -> None:
        """Withdraw all records and release the group."""


class DiscoveryClient(Protocol):
    """Connection to the local discovery service."""

    error: BaseException | None

    @property
    def disconnected(self) -> bool:
        """True when a FAILURE was a clean disconnect rather than an error."""

    def start(self) -> None:
        """Begin connecting; the outcome arrives as a ClientState."""

    def new_group(self, callback: GroupCallback) -> EntryGroup:
        """Create an entry group bound to this client."""

    def free(self) -> None:
        """Release the client and everything published through it."""


ClientFactory = Callable[[ClientCallback], DiscoveryClient]


def _timer_scheduler(delay: float, callback: Callable[[], None]) -> Cancellable:
    timer = threading.Timer(delay, callback)
    timer.daemon = True
    timer.start()
    return timer


def _log_notification(heading: str, message: str) -> None:
    logger.error("%s: %s", heading, message)


def compute_share_name(display_name: str, alternate: int = 0) -> str:
    """Build the advertised name; the result never exceeds 63 UTF-8 bytes."""
    suffix = f" #{alternate}" if alternate else ""
    base = SHARE_NAME_FORMAT.format(name=display_name)
    budget = MAX_SERVICE_NAME_BYTES - len(suffix.encode("utf-8"))
    return truncate_utf8(base, budget) + suffix


class AdvertisementManager:
    """Publishes the HKP service record and keeps it published."""

    def __init__(
        self,
        port: Union[int, Callable[[], int]],
        *,
        client_factory: ClientFactory | None = None,
        on_error: ErrorCallback | None = None,
        display_name: str | None = None,
        service_type: str = HKP_SERVICE_TYPE,
        restart_delay_s: float = DEFAULT_RESTART_DELAY_S,
        scheduler: Scheduler | None = None,
    ) -> None:
        self._port = port
        self.client_factory = client_factory or ZeroconfClient
        self.on_error = on_error or _log_notification
        self.display_name = display_name
        self.service_type = service_type
        self.restart_delay_s = restart_delay_s
        self.scheduler = scheduler or _timer_scheduler

        self.share_name: str | None = None
        self.collisions = 0
        self.client_state: ClientState | None = None
        self.group_state: GroupState | None = None

        self._client: DiscoveryClient | None = None
        self._group: EntryGroup | None = None
        self._pending_restart: Cancellable | None = None
        self._active = False
        self._lock = threading.RLock()

    @property
    def port(self) -> int:
        return self._port() if callable(self._port) else self._port

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def is_published(self) -> bool:
        return self.group_state is GroupState.REGISTERED

    def start(self) -> bool:
        """Begin advertising; False when no discovery client could be created."""
        with self._lock:
            if self._client is not None:
                return True
            self._active = True
            self._cancel_restart()
            started = self._start_publishing()
            if not started:
                self._active = False
            return started

    def stop(self) -> None:
        """Withdraw the record and release all handles, silently."""
        with self._lock:
            self._active = False
            self._cancel_restart()
            self._stop_publishing(notify=False)

    def _start_publishing(self) -> bool:
        self.collisions = 0
        self._calc_share_name()

        try:
            client = self.client_factory(self._on_client_state)
        except (RuntimeError, OSError, ValueError) as exc:
            logger.warning("couldn't create discovery client: %s", exc)
            self.share_name = None
            return False

        self._client = client
        self.client_state = ClientState.CONNECTING
        try:
            client.start()
        except (RuntimeError, OSError) as exc:
            logger.warning("couldn't start discovery client: %s", exc)
            self._stop_publishing(notify=False)
            return False
        return True

    def _stop_publishing(self, *, notify: bool) -> None:
        self.share_name = None
        group, self._group = self._group, None
        client, self._client = self._client, None
        self.group_state = None
        self.client_state = None

        if group is not None:
            group.free()
        if client is not None:
            client.free()

        if notify:
            self._notify(SHARE_ERROR_HEADING, SHARE_ERROR_MESSAGE)

    def _calc_share_name(self) -> None:
        display_name = self.display_name or resolve_display_name()
        self.share_name = compute_share_name(display_name, self.collisions)

    def _add_service(self) -> None:
        group = self._group
        assert group is not None and self.share_name is not None

        try:
            group.add_service(self.share_name, self.service_type, self.port)
            self.group_state = GroupState.REGISTERING
            group.commit()
        except (RuntimeError, OSError, ValueError) as exc:
            logger.warning("failed to register %s service: %s", self.service_type, exc)
            self._stop_publishing(notify=True)

    def _on_client_state(self, client: DiscoveryClient, state: ClientState) -> None:
        with self._lock:
            if client is not self._client:
                logger.debug("ignoring %s from a released discovery client", state.name)
                return

            logger.debug("discovery client state: %s", state.name)
            self.client_state = state

            if state is ClientState.RUNNING:
                if self._group is None:
                    try:
                        self._group = client.new_group(self._on_group_state)
                    except (RuntimeError, OSError) as exc:
                        logger.warning("couldn't create services group: %s", exc)
                        self._stop_publishing(notify=True)
                        return
                    self.group_state = GroupState.UNCOMMITTED
                self._add_service()

            elif state is ClientState.COLLISION:
                # Re-registration happens on the next RUNNING.
                if self._group is not None:
                    self._group.reset()
                    self.group_state = GroupState.UNCOMMITTED

            elif state is ClientState.FAILURE:
                notify = not client.disconnected
                if notify:
                    logger.warning("failure talking with the discovery service: %s", client.error)
                self._stop_publishing(notify=notify)
                self._schedule_restart()

    def _on_group_state(self, group: EntryGroup, state: GroupState) -> None:
        with self._lock:
            if group is not self._group:
                logger.debug("ignoring %s from a released entry group", state.name)
                return

            logger.debug("entry group state: %s", state.name)
            self.group_state = state

            if state is GroupState.COLLISION:
                self.collisions += 1
                self._calc_share_name()
                logger.warning("naming collision trying new name: %s", self.share_name)
                self._add_service()

            elif state is GroupState.FAILURE:
                logger.warning("entry group failure: %s", group.error)
                self._stop_publishing(notify=True)

            elif state is GroupState.REGISTERED:
                logger.info("published %r (%s) on port %d", self.share_name, self.service_type, self.port)

    def _schedule_restart(self) -> None:
        if not self._active:
            return
        self._cancel_restart()
        self._pending_restart = self.scheduler(self.restart_delay_s, self._restart_publishing)

    def _cancel_restart(self) -> None:
        pending, self._pending_restart = self._pending_restart, None
        if pending is not None:
            pending.cancel()

    def _restart_publishing(self) -> None:
        with self._lock:
            self._pending_restart = None
            if not self._active or self._client is not None:
                return
            logger.info("restarting service advertisement")
            if not self._start_publishing():
                self._schedule_restart()

    def _notify(self, heading: str, message: str) -> None:
        try:
            self.on_error(heading, message)
        except Exception:
            logger.exception("error notification handler failed")


class ZeroconfClient:
    """Discovery client backed by a python-zeroconf responder."""

    def __init__(
        self,
        callback: ClientCallback,
        *,
        interfaces: InterfaceChoice = InterfaceChoice.All,
        zeroconf_factory: Callable[..., Zeroconf] = Zeroconf,
    ) -> None:
        self._callback = callback
        self._interfaces = interfaces
        self._zeroconf_factory = zeroconf_factory
        self.zeroconf: Zeroconf | None = None
        self.error: BaseException | None = None
        self.state = ClientState.CONNECTING
        self._freed = False
        self._lock = threading.Lock()

    @property
    def disconnected(self) -> bool:
        return self.error is None or isinstance(self.error, NotRunningException)

    def start(self) -> None:
        threading.Thread(target=self._connect, name="zeroconf-connect", daemon=True).start()

    def _connect(self) -> None:
        try:
            zc = self._zeroconf_factory(interfaces=self._interfaces)
        except (OSError, RuntimeError, ZeroconfError) as exc:
            self.fail(exc)
            return

        with self._lock:
            freed = self._freed
            if not freed:
                self.zeroconf = zc
        if freed:
            zc.close()
            return
        self._emit(ClientState.RUNNING)

    def fail(self, error: BaseException | None) -> None:
        self.error = error
        self._emit(ClientState.FAILURE)

    def _emit(self, state: ClientState) -> None:
        if self._freed:
            return
        self.state = state
        self._callback(self, state)

    def new_group(self, callback: GroupCallback) -> ZeroconfEntryGroup:
        if self.zeroconf is None:
            raise AdvertisementError("discovery client is not running")
        return ZeroconfEntryGroup(self, callback)

    def free(self) -> None:
        with self._lock:
            self._freed = True
            zc, self.zeroconf = self.zeroconf, None
        if zc is not None:
            zc.close()


class ZeroconfEntryGroup:
    """Entry group registering its records on the client's responder."""

    def __init__(self, client: ZeroconfClient, callback: GroupCallback) -> None:
        self._client = client
        self._callback = callback
        self._pending: ServiceInfo | None = None
        self._registered: list[ServiceInfo] = []
        self.error: BaseException | None = None
        self.state = GroupState.UNCOMMITTED
        self._freed = False

    def add_service(self, name: str, service_type: str, port: int) -> None:
        fq_type = f"{service_type}.{MDNS_DOMAIN}"
        hostname = socket.gethostname().split(".", 1)[0]
        try:
            self._pending = ServiceInfo(
                fq_type,
                f"{name}.{fq_type}",
                port=port,
                properties={},
                server=f"{hostname}.{MDNS_DOMAIN}",
                parsed_addresses=local_addresses(),
            )
        except (BadTypeInNameException, ValueError) as exc:
            raise AdvertisementError(f"invalid service record {name!r}: {exc}") from exc

    def commit(self) -> None:
        info = self._pending
        if info is None:
            raise AdvertisementError("no service added to the group")
        zc = self._client.zeroconf
        if zc is None:
            raise AdvertisementError("discovery client is not running")

        self.state = GroupState.REGISTERING
        threading.Thread(target=self._register, args=(zc, info), name="zeroconf-register", daemon=True).start()

    def _register(self, zc: Zeroconf, info: ServiceInfo) -> None:
        try:
            zc.register_service(info, allow_name_change=False)
        except NonUniqueNameException:
            self._emit(GroupState.COLLISION)
            return
        except (OSError, NotRunningException) as exc:
            if not self._freed:
                self._client.fail(exc)
            return
        except Exception as exc:
            self.error = exc
            self._emit(GroupState.FAILURE)
            return

        self._registered.append(info)
        self._pending = None
        self._emit(GroupState.REGISTERED)

    def _emit(self, state: GroupState) -> None:
        if self._freed:
            return
        self.state = state
        self._callback(self, state)

    def reset(self) -> None:
        zc = self._client.zeroconf
        registered, self._registered = self._registered, []
        self._pending = None
        self.state = GroupState.UNCOMMITTED
        if zc is None:
            return
        for info in registered:
            try:
                zc.unregister_service(info)
            except (OSError, ZeroconfError) as exc:
                logger.debug("couldn't withdraw %s: %s", info.name, exc)

    def free(self) -> None:
        self._freed = True
        self.reset()


def local_addresses() -> list[str]:
    """Non-loopback IPv4 addresses of this host, best effort."""
    found: list[str] = []
    try:
        for family, _, _, _, sockaddr in socket.getaddrinfo(socket.gethostname(), None):
            if family == socket.AF_INET and not sockaddr[0].startswith("127."):
                found.append(sockaddr[0])
    except OSError as exc:
        logger.debug("hostname lookup failed: %s", exc)

    # The address of the default route covers hosts whose name maps to 127.0.1.1.
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.connect(("10.255.255.255", 1))
            found.append(sock.getsockname()[0])
    except OSError as exc:
        logger.debug("default route lookup failed: %s", exc)

    unique = [addr for addr in dict.fromkeys(found) if not addr.startswith("127.")]
    return unique or ["127.0.0.1"]


@dataclass(frozen=True, slots=True)
class DiscoveredService:
    name: str
    host: str
    port: int
    addresses: tuple[str, ...] = ()

    @property
    def url(self) -> str:
        host = self.addresses[0] if self.addresses else self.host.rstrip(".")
        if ":" in host:
            host = f"[{host}]"
        return f"http://{host}:{self.port}"


def browse_services(
    timeout: float = 3.0,
    *,
    service_type: str = HKP_SERVICE_TYPE,
    zeroconf_factory: Callable[..., Zeroconf] = Zeroconf,
) -> list[DiscoveredService]:
    """Collect the HKP shares announced on the local network for `timeout` seconds."""
    fq_type = f"{service_type}.{MDNS_DOMAIN}"
    names: list[str] = []

    def on_change(
        zeroconf: Zeroconf,
        service_type: str,
        name: str,
        state_change: ServiceStateChange,
    ) -> None:
        if state_change is ServiceStateChange.Added and name not in names:
            names.append(name)

    zc = zeroconf_factory()
    try:
        browser = ServiceBrowser(zc, fq_type, handlers=[on_change])
        time.sleep(timeout)
        browser.cancel()

        found: list[DiscoveredService] = []
        for name in list(names):
            info = zc.get_service_info(fq_type, name, timeout=int(timeout * 1000))
            if info is None:
                continue
            instance = name[: -len(fq_type) - 1] if name.endswith("." + fq_type) else name
            found.append(
                DiscoveredService(
                    name=instance,
                    host=info.server or "",
                    port=info.port or 0,
                    addresses=tuple(info.parsed_addresses()),
                )
            )
        return found
    finally:
        zc.close()
