"""Keyring access: key records and the stores that produce them."""

from __future__ import annotations

import datetime as dt
import logging
import re
import threading
from dataclasses import dataclass, replace
from typing import Any, Iterable, Protocol

import gnupg

from .constants import PUBKEY_ALGO_FAMILIES

logger = logging.getLogger(__name__)

_UID_RE = re.compile(r"^(?P<name>.*?)\s*(?:\((?P<comment>[^()]*)\)\s*)?(?:<(?P<email>[^<>]*)>)?\s*$")
_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")


class KeystoreError(RuntimeError):
    """Raised on keyring access failures."""


class KeystoreInitError(KeystoreError):
    """Raised when a keyring session cannot be opened."""


class KeystoreQueryError(KeystoreError):
    """Raised when listing or exporting keys fails."""


@dataclass(frozen=True, slots=True)
class Signature:
    keyid: str
    name: str | None = None
    email: str | None = None


@dataclass(frozen=True, slots=True)
class UserIdentity:
    name: str | None = None
    email: str | None = None
    signatures: tuple[Signature, ...] = ()

    @property
    def text(self) -> str:
        if self.name and self.email:
            return f"{self.name} <{self.email}>"
        return self.name or self.email or ""


@dataclass(frozen=True, slots=True)
class KeyRecord:
    """Metadata of one public key as listed by a keystore."""

    fingerprint: str
    keyid: str
    algorithm: str = "Unknown"
    bits: int = 0
    created: int = 0
    revoked: bool = False
    uids: tuple[UserIdentity, ...] = ()

    def without_signatures(self) -> KeyRecord:
        return replace(self, uids=tuple(replace(uid, signatures=()) for uid in self.uids))


class KeystoreProtocol(Protocol):
    """Narrow query/export interface the lookup server consumes."""

    def list_keys(self, search: str, include_signatures: bool = False) -> list[KeyRecord]:
        """Return all records matching `search`."""

    def export_armored(self, search: str) -> str:
        """Return ASCII-armored public key material, or an empty string."""

    def close(self) -> None:
        """Release the keyring session."""


def parse_uid(value: str) -> tuple[str | None, str | None]:
    """Split an OpenPGP user id `Name (Comment) <email>` into name and email."""
    match = _UID_RE.match(value or "")
    if match is None:
        return (value or None), None
    return (match.group("name") or None), (match.group("email") or None)


def algorithm_from_id(algo: Any) -> str:
    try:
        return PUBKEY_ALGO_FAMILIES.get(int(algo), "Unknown")
    except (TypeError, ValueError):
        return "Unknown"


def matches_search(record: KeyRecord, search: str) -> bool:
    """Approximate gpg's pattern rules: `0x`/hex key ids, else user id substring."""
    term = search.strip()
    if not term:
        return False

    hex_term = term[2:] if term.lower().startswith("0x") else term
    if len(hex_term) in (8, 16, 32, 40) and _HEX_RE.match(hex_term):
        hex_term = hex_term.upper()
        return record.fingerprint.upper().endswith(hex_term) or record.keyid.upper().endswith(hex_term)

    needle = term.lower()
    return any(needle in uid.text.lower() for uid in record.uids)


class MemoryKeystore:
    """In-process keystore holding records and their armored exports."""

    def __init__(self, entries: Iterable[tuple[KeyRecord, str]] = ()) -> None:
        self._records: list[KeyRecord] = []
        self._armored: dict[str, str] = {}
        self._lock = threading.Lock()
        for record, armored in entries:
            self.add(record, armored)

    def add(self, record: KeyRecord, armored: str = "") -> None:
        with self._lock:
            self._records.append(record)
            self._armored[record.fingerprint] = armored

    def list_keys(self, search: str, include_signatures: bool = False) -> list[KeyRecord]:
        with self._lock:
            found = [record for record in self._records if matches_search(record, search)]
        if include_signatures:
            return found
        return [record.without_signatures() for record in found]

    def export_armored(self, search: str) -> str:
        with self._lock:
            blocks = [
                self._armored.get(record.fingerprint, "")
                for record in self._records
                if matches_search(record, search)
            ]
        return "\n".join(block for block in blocks if block)

    def close(self) -> None:
        return


class GnuPGKeystore:
    """Keystore backed by the user's GnuPG keyring through python-gnupg."""

    def __init__(self, *, gnupghome: str | None = None, gpgbinary: str = "gpg") -> None:
        try:
            self._gpg = gnupg.GPG(gnupghome=gnupghome, gpgbinary=gpgbinary)
        except (OSError, ValueError) as exc:
            raise KeystoreInitError(f"couldn't initialize gnupg: {exc}") from exc
        self._gpg.encoding = "utf-8"

    def list_keys(self, search: str, include_signatures: bool = False) -> list[KeyRecord]:
        # The search term never reaches gpg's command line; matching happens here.
        return [
            record
            for record in self._all_records(include_signatures=include_signatures)
            if matches_search(record, search)
        ]

    def export_armored(self, search: str) -> str:
        fingerprints = [
            record.fingerprint
            for record in self._all_records(include_signatures=False)
            if matches_search(record, search) and _HEX_RE.match(record.fingerprint)
        ]
        if not fingerprints:
            return ""

        try:
            exported = self._gpg.export_keys(fingerprints, armor=True)
        except (OSError, ValueError) as exc:
            raise KeystoreQueryError(f"exporting keys failed: {exc}") from exc

        if isinstance(exported, bytes):
            return exported.decode("utf-8", errors="replace")
        if isinstance(exported, str):
            return exported
        data = getattr(exported, "data", b"")
        return data.decode("utf-8", errors="replace") if isinstance(data, bytes) else str(data or "")

    def _all_records(self, *, include_signatures: bool) -> list[KeyRecord]:
        try:
            listed = self._gpg.list_keys(sigs=include_signatures)
        except (OSError, ValueError) as exc:
            raise KeystoreQueryError(f"listing keys failed: {exc}") from exc
        return [record_from_gnupg(item, include_signatures=include_signatures) for item in listed]

    def close(self) -> None:
        # python-gnupg runs one gpg process per call; nothing stays open.
        return


def record_from_gnupg(key: dict[str, Any], *, include_signatures: bool = False) -> KeyRecord:
    """Build a KeyRecord from one python-gnupg `list_keys()` entry."""
    fingerprint = str(key.get("fingerprint") or "")
    keyid = str(key.get("keyid") or fingerprint[-16:])
    raw_uids = [str(uid) for uid in key.get("uids") or []]

    sigs_by_uid: dict[str, list[Any]] = {}
    if include_signatures:
        sigs_by_uid = _signatures_by_uid(key.get("sigs"), raw_uids)

    uids = []
    for raw in raw_uids:
        name, email = parse_uid(raw)
        signatures = tuple(_signature_from_entry(entry) for entry in sigs_by_uid.get(raw, []))
        uids.append(UserIdentity(name=name, email=email, signatures=signatures))

    return KeyRecord(
        fingerprint=fingerprint,
        keyid=keyid,
        algorithm=algorithm_from_id(key.get("algo")),
        bits=_to_int(key.get("length")),
        created=_parse_created(key.get("date")),
        revoked=key.get("trust") == "r",
        uids=tuple(uids),
    )


def _signatures_by_uid(raw_sigs: Any, uids: list[str]) -> dict[str, list[Any]]:
    if isinstance(raw_sigs, dict):
        return {str(uid): list(entries) for uid, entries in raw_sigs.items()}

    # Flat list form: uid strings mark where the next uid's signatures begin.
    grouped: dict[str, list[Any]] = {uid: [] for uid in uids}
    current = uids[0] if uids else None
    for entry in raw_sigs or ():
        if isinstance(entry, str):
            current = entry
            grouped.setdefault(entry, [])
        elif current is not None:
            grouped[current].append(entry)
    return grouped


def _signature_from_entry(entry: Any) -> Signature:
    if isinstance(entry, dict):
        keyid, uid = entry.get("keyid", ""), entry.get("uid", "")
    else:
        keyid = entry[0] if len(entry) > 0 else ""
        uid = entry[1] if len(entry) > 1 else ""
    name, email = parse_uid(str(uid))
    return Signature(keyid=str(keyid), name=name, email=email)


def _to_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _parse_created(value: Any) -> int:
    if value is None or value == "":
        return 0
    text = str(value)
    if text.isdigit():
        return int(text)
    try:
        parsed = dt.datetime.fromisoformat(text)
    except ValueError:
        logger.debug("unparseable key creation date: %r", text)
        return 0
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return int(parsed.timestamp())
