"""Sharing lifecycle: the lookup server plus its network advertisement."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

from .advertise import (
    SHARE_ERROR_HEADING,
    SHARE_ERROR_MESSAGE,
    AdvertisementManager,
    ClientFactory,
    ErrorCallback,
    Scheduler,
)
from .constants import DEFAULT_RESTART_DELAY_S, HKP_ANY_PORT
from .keystore import GnuPGKeystore, KeystoreError, KeystoreProtocol
from .transport_http import HKPServer, HKPServerError, KeystoreFactory

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SharingConfig:
    host: str = ""
    port: int = HKP_ANY_PORT
    gnupg_home: str | None = None
    gpg_binary: str = "gpg"
    advertise: bool = True
    share_name: str | None = None
    restart_delay_s: float = DEFAULT_RESTART_DELAY_S


class SharingService:
    """Starts and stops key sharing as one unit.

    The lookup server comes up first so the advertised record always points at
    a bound port. Stopping withdraws the record before closing the listener.
    """

    def __init__(
        self,
        config: SharingConfig | None = None,
        *,
        keystore_factory: KeystoreFactory | None = None,
        client_factory: ClientFactory | None = None,
        on_error: ErrorCallback | None = None,
        scheduler: Scheduler | None = None,
    ) -> None:
        self.config = config or SharingConfig()
        self.keystore_factory = keystore_factory or self._default_keystore
        self.client_factory = client_factory
        self.on_error = on_error
        self.scheduler = scheduler
        self.server: HKPServer | None = None
        self.advertiser: AdvertisementManager | None = None
        self._lock = threading.RLock()

    def _default_keystore(self) -> KeystoreProtocol:
        return GnuPGKeystore(gnupghome=self.config.gnupg_home, gpgbinary=self.config.gpg_binary)

    @property
    def is_sharing(self) -> bool:
        return self.server is not None and self.server.is_running()

    @property
    def share_name(self) -> str | None:
        if self.advertiser is None:
            return None
        return self.advertiser.share_name

    @property
    def url(self) -> str:
        if self.server is None:
            raise HKPServerError("key sharing is not running")
        return self.server.url

    def start_sharing(self) -> bool:
        with self._lock:
            if self.server is not None:
                return True

            server = HKPServer(self.config.host, self.config.port, keystore_factory=self.keystore_factory)
            try:
                port = server.start()
            except (HKPServerError, KeystoreError) as exc:
                logger.warning("couldn't start the key server: %s", exc)
                self._notify(SHARE_ERROR_HEADING, str(exc))
                return False
            self.server = server

            if self.config.advertise:
                advertiser = AdvertisementManager(
                    server.get_port,
                    client_factory=self.client_factory,
                    on_error=self.on_error,
                    display_name=self.config.share_name,
                    restart_delay_s=self.config.restart_delay_s,
                    scheduler=self.scheduler,
                )
                if not advertiser.start():
                    logger.warning("couldn't start publishing the key server")
                    self.server = None
                    server.stop()
                    self._notify(SHARE_ERROR_HEADING, SHARE_ERROR_MESSAGE)
                    return False
                self.advertiser = advertiser

            logger.info("sharing keys on port %d", port)
            return True

    def stop_sharing(self) -> None:
        with self._lock:
            advertiser, self.advertiser = self.advertiser, None
            server, self.server = self.server, None
            if advertiser is not None:
                advertiser.stop()
            if server is not None:
                server.stop()
                logger.info("stopped sharing keys")

    def serve_until(self, stop_event: threading.Event, poll_interval_s: float = 0.5) -> None:
        """Block until `stop_event` is set, then stop sharing."""
        try:
            while not stop_event.wait(poll_interval_s):
                pass
        finally:
            self.stop_sharing()

    def _notify(self, heading: str, message: str) -> None:
        if self.on_error is None:
            logger.error("%s: %s", heading, message)
            return
        try:
            self.on_error(heading, message)
        except Exception:
            logger.exception("error notification handler failed")
