"""Protocol constants."""

HKP_LOOKUP_PATH = "/pks/lookup"
HKP_ADD_PATH = "/pks/add"

# 11371 is the conventional HKP port; 0 lets the system pick one.
HKP_DEFAULT_PORT = 11371
HKP_ANY_PORT = 0

HKP_SERVICE_TYPE = "_pgpkey-hkp._tcp"
MDNS_DOMAIN = "local."

# DNS labels (and so DNS-SD instance names) are limited to 63 bytes.
MAX_SERVICE_NAME_BYTES = 63

DEFAULT_RESTART_DELAY_S = 1.0

SUPPORTED_LOOKUP_OPS = {"index", "vindex", "get"}

# OpenPGP public-key algorithm ids (RFC 4880 section 9.1).
PUBKEY_ALGO_FAMILIES = {
    1: "RSA",
    2: "RSA",
    3: "RSA",
    16: "ElGamal",
    20: "ElGamal",
    17: "DSA",
}
