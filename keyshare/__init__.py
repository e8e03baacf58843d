"""Share the local GnuPG keyring over HKP, advertised with DNS-SD."""

from .advertise import (
    AdvertisementError,
    AdvertisementManager,
    ClientState,
    DiscoveredService,
    GroupState,
    ZeroconfClient,
    browse_services,
    compute_share_name,
)
from .daemon import SharingConfig, SharingService
from .keystore import (
    GnuPGKeystore,
    KeyRecord,
    KeystoreError,
    KeystoreInitError,
    KeystoreQueryError,
    MemoryKeystore,
    Signature,
    UserIdentity,
)
from .render import render_error, render_get, render_index
from .transport_http import (
    BindFailedError,
    HKPServer,
    HKPServerError,
    NotRunningError,
    process_lookup,
    send_lookup,
)

__version__ = "0.1.0"

__all__ = [
    "AdvertisementError",
    "AdvertisementManager",
    "BindFailedError",
    "ClientState",
    "DiscoveredService",
    "GnuPGKeystore",
    "GroupState",
    "HKPServer",
    "HKPServerError",
    "KeyRecord",
    "KeystoreError",
    "KeystoreInitError",
    "KeystoreQueryError",
    "MemoryKeystore",
    "NotRunningError",
    "SharingConfig",
    "SharingService",
    "Signature",
    "UserIdentity",
    "ZeroconfClient",
    "browse_services",
    "compute_share_name",
    "process_lookup",
    "render_error",
    "render_get",
    "render_index",
    "send_lookup",
    "__version__",
]
