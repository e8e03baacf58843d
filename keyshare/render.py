"""PKS-compatible HTML rendering of lookup results.

The HKP wire format is the HTML that the PKS keyserver produced.
Clients scrape it, so the exact markup, spacing and CRLF line endings matter
more than well-formedness.
"""

from __future__ import annotations

from typing import Iterable

from .keystore import KeyRecord, Signature
from .utils import escape_html, format_utc_date, group_fingerprint, last_x

ERROR_TEMPLATE = (
    "<title>Public Key Server -- Error</title><p>\r\n"
    "<h1>Public Key Server -- Error</h1><p>\r\n"
    "{message}"
)

VINDEX_PREFIX = (
    "<title>Public Key Server -- Verbose Index ``{search}''</title><p>"
    "<h1>Public Key Server -- Verbose Index ``{search}''</h1><p>"
    "<pre>"
)

# The plain index reuses the verbose title, as PKS does.
INDEX_PREFIX = VINDEX_PREFIX + "Type bits /keyID    Date       User ID\r\n"

INDEX_SUFFIX = "</pre>"

INDEX_REVOKED = "*** KEY REVOKED ***"
INDEX_UID_NAME = "{name} "
INDEX_UID_EMAIL = '{name} &lt;<a href="/pks/lookup?op=index&search=0x{keyid}">{email}</a>&gt;'
INDEX_KEY_LINE = 'pub {bits}{algo}/<a href="/pks/lookup?op=get&search=0x{keyid}">{keyid}</a> {date} {uid}\r\n'
INDEX_FPR_LINE = "     Key fingerprint = {fingerprint}\r\n"
INDEX_UID_LINE = "                               {uid}\r\n"
INDEX_SIG_LINE = 'sig        <a href="/pks/lookup?op=get&search=0x{keyid}">{keyid}</a>             {uid}\r\n'

GET_PREFIX = (
    "<title>Public Key Server -- Get ``{search}''</title><p>\r\n"
    "<h1>Public Key Server -- Get ``{search}''</h1><p>\r\n"
    "<pre>\r\n"
)
GET_SUFFIX = "\r\n</pre>"

ADD_RESPONSE = ERROR_TEMPLATE.format(message="Adding of keys not allowed")

NOTFOUND_RESPONSE = "<HEAD><TITLE>404 Not Found</TITLE></HEAD><BODY>unknown uri in pks request</BODY>\r\n"

ALGORITHM_LETTERS = {
    "RSA": "R",
    "ElGamal": "E",
    "DSA": "D",
}


def algorithm_letter(algorithm: str) -> str:
    return ALGORITHM_LETTERS.get(algorithm, "?")


def format_uid(name: str | None, keyid: str, email: str | None) -> str:
    if name and email:
        return INDEX_UID_EMAIL.format(name=name, keyid=last_x(keyid, 8), email=email)
    if name:
        return INDEX_UID_NAME.format(name=name)
    return ""


def render_error(message: str) -> str:
    """Error page; `message` is embedded as-is and may carry markup."""
    return ERROR_TEMPLATE.format(message=message)


def render_get(armored: str, search: str) -> str:
    escaped = escape_html(search)
    return GET_PREFIX.format(search=escaped) + armored + GET_SUFFIX


def render_index(
    records: Iterable[KeyRecord],
    search: str,
    *,
    verbose: bool = False,
    fingerprints: bool = False,
) -> str:
    escaped = escape_html(search)
    prefix = VINDEX_PREFIX if verbose else INDEX_PREFIX
    parts = [prefix.format(search=escaped)]
    for record in records:
        parts.extend(_key_lines(record, verbose=verbose, fingerprints=fingerprints))
    parts.append(INDEX_SUFFIX)
    return "".join(parts)


def _key_lines(record: KeyRecord, *, verbose: bool, fingerprints: bool) -> list[str]:
    lines: list[str] = []
    short_id = last_x(record.fingerprint, 8)

    # A revoked key shows the marker where the primary uid would be; its uids
    # all follow as continuation lines instead.
    if record.revoked:
        primary = INDEX_REVOKED
        rest = record.uids
    elif record.uids:
        first = record.uids[0]
        primary = format_uid(first.name, record.fingerprint, first.email)
        rest = record.uids[1:]
    else:
        # Keys without user ids still get their pub line.
        primary = ""
        rest = ()

    lines.append(
        INDEX_KEY_LINE.format(
            bits="% 5d" % record.bits,
            algo=algorithm_letter(record.algorithm),
            keyid=short_id,
            date=format_utc_date(record.created),
            uid=primary,
        )
    )

    if fingerprints:
        lines.append(INDEX_FPR_LINE.format(fingerprint=group_fingerprint(record.fingerprint)))

    if not record.revoked and record.uids and verbose:
        lines.extend(_signature_lines(record.uids[0].signatures))

    for uid in rest:
        lines.append(INDEX_UID_LINE.format(uid=format_uid(uid.name, record.fingerprint, uid.email)))
        if verbose:
            lines.extend(_signature_lines(uid.signatures))

    return lines


def _signature_lines(signatures: Iterable[Signature]) -> list[str]:
    return [
        INDEX_SIG_LINE.format(
            keyid=last_x(sig.keyid, 8),
            uid=format_uid(sig.name, sig.keyid, sig.email),
        )
        for sig in signatures
    ]
