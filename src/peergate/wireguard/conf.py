"""
Lossless model of a wg-quick style config file.

The file is hand-editable, so parsing keeps every line verbatim: comments,
blank lines, unknown keys and unknown section headers survive a round trip.
Edits operate on whole sections and never rewrite lines they do not own.
"""

from __future__ import annotations

import base64
import re
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field

from peergate.enums import SectionKind
from peergate.errors import ConfigValidationFailed

INTERFACE_HEADER = "[Interface]"
PEER_HEADER = "[Peer]"

_WG_KEY_RE = re.compile(r"^[A-Za-z0-9+/]{43}=$")


def _is_header(line: str) -> bool:
    stripped = line.strip()
    return len(stripped) >= 2 and stripped.startswith("[") and stripped.endswith("]")


def _is_blank(line: str) -> bool:
    return not line.strip()


def _is_comment(line: str) -> bool:
    stripped = line.strip()
    return stripped.startswith("#") or stripped.startswith(";")


def _split_key_value(line: str) -> tuple[str, str] | None:
    if _is_blank(line) or _is_comment(line) or _is_header(line):
        return None
    key, sep, value = line.partition("=")
    if not sep:
        return None
    return key.strip(), value.strip()


def is_valid_wg_key(value: str) -> bool:
    """44-char base64 that decodes to exactly 32 bytes."""
    key = (value or "").strip()
    if not _WG_KEY_RE.fullmatch(key):
        return False
    try:
        return len(base64.b64decode(key, validate=True)) == 32
    except ValueError:
        return False


@dataclass
class ConfigSection:
    header: str
    lines: list[str] = field(default_factory=list)

    @property
    def kind(self) -> SectionKind | None:
        name = self.header.strip()[1:-1].strip().lower()
        try:
            return SectionKind(name)
        except ValueError:
            return None

    def items(self) -> list[tuple[str, str]]:
        out: list[tuple[str, str]] = []
        for line in self.lines:
            pair = _split_key_value(line)
            if pair is not None:
                out.append(pair)
        return out

    def get_all(self, key: str) -> list[str]:
        wanted = key.strip().lower()
        return [value for name, value in self.items() if name.lower() == wanted]

    def get(self, key: str) -> str | None:
        values = self.get_all(key)
        return values[0] if values else None

    def render(self) -> list[str]:
        return [self.header, *self.lines]


@dataclass
class ConfigDocument:
    preamble: list[str] = field(default_factory=list)
    sections: list[ConfigSection] = field(default_factory=list)

    def peers(self) -> list[ConfigSection]:
        return [s for s in self.sections if s.kind == SectionKind.PEER]

    def interfaces(self) -> list[ConfigSection]:
        return [s for s in self.sections if s.kind == SectionKind.INTERFACE]


@dataclass
class ConfigReport:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    peer_count: int = 0

    @property
    def ok(self) -> bool:
        return not self.errors


def parse(text: str) -> ConfigDocument:
    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()

    doc = ConfigDocument()
    current: ConfigSection | None = None
    for line in lines:
        if _is_header(line):
            current = ConfigSection(header=line)
            doc.sections.append(current)
        elif current is None:
            doc.preamble.append(line)
        else:
            current.lines.append(line)
    return doc


def serialize(doc: ConfigDocument) -> str:
    out: list[str] = list(doc.preamble)
    for section in doc.sections:
        out.extend(section.render())
    while out and _is_blank(out[-1]):
        out.pop()
    return "\n".join(out) + "\n"


def has_public_key(value: str) -> Callable[[ConfigSection], bool]:
    wanted = (value or "").strip()

    def _predicate(section: ConfigSection) -> bool:
        return bool(wanted) and any(key == wanted for key in section.get_all("PublicKey"))

    return _predicate


def remove_sections(
    doc: ConfigDocument, predicate: Callable[[ConfigSection], bool]
) -> tuple[ConfigDocument, int]:
    kept: list[ConfigSection] = []
    removed = 0
    for section in doc.sections:
        if section.kind == SectionKind.PEER and predicate(section):
            removed += 1
            continue
        kept.append(section)
    return ConfigDocument(preamble=list(doc.preamble), sections=kept), removed


def append_section(
    doc: ConfigDocument,
    header: str,
    fields: Iterable[tuple[str, str | None]],
) -> ConfigDocument:
    preamble = list(doc.preamble)
    sections = [ConfigSection(header=s.header, lines=list(s.lines)) for s in doc.sections]

    # Exactly one blank line between the previous content and the new header.
    tail = sections[-1].lines if sections else preamble
    while tail and _is_blank(tail[-1]):
        tail.pop()
    if sections or preamble:
        tail.append("")

    lines = [f"{key} = {value}" for key, value in fields if value not in (None, "")]
    sections.append(ConfigSection(header=header, lines=lines))
    return ConfigDocument(preamble=preamble, sections=sections)


def find_peer(doc: ConfigDocument, public_key: str) -> ConfigSection | None:
    match = has_public_key(public_key)
    for section in doc.peers():
        if match(section):
            return section
    return None


def peer_public_keys(doc: ConfigDocument) -> set[str]:
    keys: set[str] = set()
    for section in doc.peers():
        for key in section.get_all("PublicKey"):
            if key:
                keys.add(key)
    return keys


def interface_section(doc: ConfigDocument) -> ConfigSection | None:
    found = doc.interfaces()
    return found[0] if found else None


def validate(doc: ConfigDocument) -> ConfigReport:
    report = ConfigReport(peer_count=len(doc.peers()))

    for idx, line in enumerate(doc.preamble, start=1):
        if _split_key_value(line) is not None:
            report.errors.append(f"line {idx}: key-value line outside of any section: {line.strip()!r}")

    if len(doc.interfaces()) > 1:
        report.errors.append(f"expected a single [Interface] section, found {len(doc.interfaces())}")

    seen_keys: dict[str, int] = {}
    for number, section in enumerate(doc.peers(), start=1):
        keys = section.get_all("PublicKey")
        if not keys:
            report.errors.append(f"peer #{number} is missing PublicKey")
            continue
        if len(keys) > 1:
            report.errors.append(f"peer #{number} has {len(keys)} PublicKey lines")
            continue
        key = keys[0]
        if not key:
            report.errors.append(f"peer #{number} has an empty PublicKey")
            continue
        if not is_valid_wg_key(key):
            report.warnings.append(f"peer #{number}: PublicKey length is {len(key)}, expected a 44 character key")
        if key in seen_keys:
            report.warnings.append(f"peer #{number}: PublicKey duplicates peer #{seen_keys[key]}")
        else:
            seen_keys[key] = number

        allowed = section.get_all("AllowedIPs")
        if not allowed or not any(allowed):
            report.warnings.append(f"peer #{number}: AllowedIPs is empty")

    return report


def ensure_valid(doc: ConfigDocument) -> ConfigReport:
    report = validate(doc)
    if not report.ok:
        raise ConfigValidationFailed(report.errors)
    return report


def repair(doc: ConfigDocument) -> tuple[ConfigDocument, int]:
    """Drop peer sections that have no usable PublicKey."""

    def _broken(section: ConfigSection) -> bool:
        keys = [k for k in section.get_all("PublicKey") if len(k) >= 43]
        return len(keys) != 1

    return remove_sections(doc, _broken)


def render_client_config(
    *,
    private_key: str,
    address: str,
    dns: str,
    server_public_key: str,
    endpoint: str,
    preshared_key: str | None = None,
    allowed_ips: str = "0.0.0.0/0",
    keepalive: int = 25,
) -> str:
    doc = ConfigDocument()
    doc = append_section(
        doc,
        INTERFACE_HEADER,
        [("PrivateKey", private_key), ("Address", address), ("DNS", dns)],
    )
    doc = append_section(
        doc,
        PEER_HEADER,
        [
            ("PublicKey", server_public_key),
            ("PresharedKey", preshared_key),
            ("Endpoint", endpoint),
            ("AllowedIPs", allowed_ips),
            ("PersistentKeepalive", str(keepalive)),
        ],
    )
    return serialize(doc)


def peer_fields(public_key: str, allowed_ips: str, preshared_key: str | None = None) -> Sequence[tuple[str, str | None]]:
    return [("PublicKey", public_key), ("PresharedKey", preshared_key), ("AllowedIPs", allowed_ips)]
